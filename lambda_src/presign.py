"""
presign.py: Issue presigned S3 PUT URLs for direct browser uploads.

Called by the web client:
  POST <function_url>
  Body: {
    "filename":      "My Report.PDF",
    "filesize":      1000000,
    "filetype":      "application/pdf",
    "filemd5":       "<base64 MD5 of the file>",
    "clientnetwork": "wifi"
  }

Returns:
  200 { "presignedUrl": "https://..." }
  400 { "error": "..." }   bad JSON or missing fields
  500 { "error": "..." }   missing BUCKET_NAME or signing failure

The object is stored under a fresh random key (<uuid>.<ext>), never under
the client's filename. The URL is bound to the declared Content-Type and
Content-MD5, so S3 rejects an upload that does not match them. Its lifetime
is estimated from the client's network class and the file size, and always
lies between 1 and 5 minutes.
"""

import base64
import json
import logging
import math
import os
import uuid
from collections import namedtuple
from pathlib import PurePosixPath
from types import MappingProxyType

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger()
logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO').upper())

BUCKET = os.environ.get('BUCKET_NAME')
REGION = os.environ.get('AWS_REGION_NAME')

# Built once per container; handed to the signer on every request
s3 = boto3.client('s3', region_name=REGION, config=Config(signature_version='s3v4'))

MIN_EXPIRY = 60    # 1 minute
MAX_EXPIRY = 300   # 5 minutes

# Heuristic uplink speeds in bits per second
SPEEDS = MappingProxyType({
    'slow-2g':  50 * 1e3,
    '2g':       100 * 1e3,
    '3g':       1 * 1e6,
    '4g':       10 * 1e6,
    'wifi':     30 * 1e6,
    'ethernet': 50 * 1e6,
    'unknown':  1 * 1e6,
})

CORS_HEADERS = {
    'Content-Type': 'application/json',
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type',
}

REQUIRED_FIELDS = ('filename', 'filesize', 'filetype', 'filemd5', 'clientnetwork')

UploadRequest = namedtuple('UploadRequest', REQUIRED_FIELDS)


class UploadError(Exception):
    """Base for every failure that ends a request with an error response."""
    status_code = 500


class ConfigurationError(UploadError):
    status_code = 500

    def __init__(self):
        super().__init__('The server is missing an important variable.')


class InvalidPayload(UploadError):
    status_code = 400

    def __init__(self, detail):
        super().__init__(f'Invalid request: {detail}')


class MissingFields(UploadError):
    status_code = 400

    def __init__(self, fields):
        super().__init__('Missing required fields.')
        self.fields = fields


class SigningFailed(UploadError):
    status_code = 500

    def __init__(self, detail):
        super().__init__(f'Failed to generate presigned URL: {detail}')


def respond(status_code, body):
    """Wrap a JSON body in the proxy-integration response shape. None sends no body."""
    return {
        'statusCode': status_code,
        'headers': dict(CORS_HEADERS),
        'body': json.dumps(body) if body is not None else '',
    }


def request_method(event):
    """HTTP method for both REST API (v1) and HTTP API (v2) payloads."""
    method = event.get('httpMethod')
    if not method:
        method = ((event.get('requestContext') or {}).get('http') or {}).get('method')
    return (method or '').upper()


def parse_request(body, is_base64=False):
    """
    Parse and check the raw request body. Returns an UploadRequest.

    Only presence (truthiness) of the five fields is enforced, plus the
    filename being text and the filesize being a finite number. filetype and
    filemd5 go to S3 unchecked; S3 enforces them at upload time.
    """
    try:
        if is_base64:
            body = base64.b64decode(body, validate=True).decode('utf-8')
        payload = json.loads(body)
    except (ValueError, TypeError) as e:
        raise InvalidPayload(e) from e

    if not isinstance(payload, dict):
        raise InvalidPayload('request body must be a JSON object.')

    logger.debug('Payload: %s', payload)

    missing = [f for f in REQUIRED_FIELDS if not payload.get(f)]
    if missing:
        raise MissingFields(missing)

    if not isinstance(payload['filename'], str):
        raise InvalidPayload('The filename must be a string.')

    filesize = payload['filesize']
    if isinstance(filesize, bool) or not isinstance(filesize, (int, float)):
        raise InvalidPayload('The filesize must be a number.')
    # JSON integers are unbounded and may not fit in a float
    if isinstance(filesize, float) and not math.isfinite(filesize):
        raise InvalidPayload('The filesize must be a number.')

    return UploadRequest(*(payload[f] for f in REQUIRED_FIELDS))


def file_extension(filename):
    """
    Lower-cased extension of the last path segment of filename, without the dot.

    'a/b/report.PDF' -> 'pdf', 'archive.tar.gz' -> 'gz'.
    Returns '' for names without an extension: '', '...', 'README', '.gitignore'.
    """
    if not isinstance(filename, str):
        raise TypeError('The filename must be a string.')

    base = PurePosixPath(filename.strip()).name

    if not base.strip('.'):
        return ''

    parts = [p for p in base.split('.') if p]
    if len(parts) == 1:
        return ''

    return parts[-1].lower()


def object_key(filename):
    """Random storage key keeping only the (sanitized) extension of filename."""
    key = str(uuid.uuid4())
    ext = file_extension(filename)
    if ext:
        key = f'{key}.{ext}'
    return key


def transfer_time(network, filesize):
    """
    Seconds to allow for uploading filesize bytes over the given network class.

    Unrecognized networks use the 'unknown' speed. The result is clamped to
    [MIN_EXPIRY, MAX_EXPIRY] and rounded half up.
    """
    speed = SPEEDS.get(network, SPEEDS['unknown']) if isinstance(network, str) else SPEEDS['unknown']
    bits = filesize * 8
    # Compared before dividing so huge integer sizes never go through float
    if bits >= MAX_EXPIRY * speed:
        return MAX_EXPIRY
    seconds = max(bits / speed, MIN_EXPIRY)
    return int(math.floor(seconds + 0.5))


def presigned_put_url(client, bucket, key, content_type, content_md5, expires_in):
    """Presigned PUT URL for a single object, bound to its type and MD5."""
    try:
        return client.generate_presigned_url(
            'put_object',
            Params={
                'Bucket':      bucket,
                'Key':         key,
                'ContentType': content_type,
                'ContentMD5':  content_md5,
            },
            ExpiresIn=expires_in,
        )
    except (BotoCoreError, ClientError) as e:
        raise SigningFailed(e) from e


def handler(event, context):
    if request_method(event) == 'OPTIONS':
        return respond(204, None)

    try:
        if not BUCKET:
            logger.error('Missing BUCKET_NAME environment variable.')
            raise ConfigurationError()

        logger.debug('Bucket: %s', BUCKET)

        upload = parse_request(event.get('body'), event.get('isBase64Encoded', False))

        key = object_key(upload.filename)
        expires_in = transfer_time(upload.clientnetwork, upload.filesize)
        logger.debug('Key %s for %s, expires in %ss', key, upload.filename, expires_in)

        url = presigned_put_url(s3, BUCKET, key, upload.filetype, upload.filemd5, expires_in)
    except MissingFields as e:
        logger.error('Missing required fields: %s', ', '.join(e.fields))
        return respond(e.status_code, {'error': str(e)})
    except UploadError as e:
        logger.warning('Request failed with %s: %s', type(e).__name__, e)
        return respond(e.status_code, {'error': str(e)})

    logger.debug('Presigned URL: %s', url)

    return respond(200, {'presignedUrl': url})
