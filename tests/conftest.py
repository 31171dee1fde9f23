import json

import pytest

import presign


class DummyS3:
    """Stands in for the boto3 S3 client; records the presign call."""

    def __init__(self, url='https://bucket.s3.amazonaws.com/signed', error=None):
        self.url = url
        self.error = error
        self.calls = []

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self.calls.append({'ClientMethod': ClientMethod, 'Params': Params, 'ExpiresIn': ExpiresIn})
        if self.error:
            raise self.error
        return self.url


@pytest.fixture(autouse=True)
def bucket(monkeypatch):
    monkeypatch.setattr(presign, 'BUCKET', 'uploads-bucket')
    return 'uploads-bucket'


@pytest.fixture
def dummy_s3(monkeypatch):
    client = DummyS3()
    monkeypatch.setattr(presign, 's3', client)
    return client


@pytest.fixture
def payload():
    return {
        'filename': 'My Report.PDF',
        'filesize': 1_000_000,
        'filetype': 'application/pdf',
        'filemd5': '1B2M2Y8AsgTpgAmY7PhCfg==',
        'clientnetwork': 'wifi',
    }


@pytest.fixture
def make_event():
    def _make(body, **extra):
        if not isinstance(body, str) and body is not None:
            body = json.dumps(body)
        event = {'httpMethod': 'POST', 'body': body}
        event.update(extra)
        return event
    return _make
