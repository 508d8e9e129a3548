from datetime import datetime, timezone

import pytest
from unittest.mock import Mock

from aws_mfa_rotate import AwsFilePaths, Reporter, Settings


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    """Keep a stray .env in the working tree from leaking into tests."""
    workdir = tmp_path / "cwd"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    monkeypatch.delenv("AWS_SHARED_CREDENTIALS_FILE", raising=False)
    monkeypatch.delenv("AWS_CONFIG_FILE", raising=False)
    return workdir


@pytest.fixture
def aws_dir(tmp_path):
    directory = tmp_path / "home" / ".aws"
    directory.mkdir(parents=True)
    return directory


@pytest.fixture
def paths(aws_dir):
    return AwsFilePaths(environ={}, home=lambda: aws_dir.parent)


@pytest.fixture
def reporter():
    return Reporter(quiet=True)


@pytest.fixture
def settings():
    return Settings(source_profile="work", destination_profile="work-mfa", mfa_code="123456")


@pytest.fixture
def mock_iam():
    iam = Mock()
    iam.list_mfa_devices.return_value = {
        "MFADevices": [
            {"UserName": "alice", "SerialNumber": "arn:aws:iam::123456789012:mfa/alice-phone"},
            {"UserName": "alice", "SerialNumber": "arn:aws:iam::123456789012:mfa/alice-key"},
        ]
    }
    return iam


@pytest.fixture
def mock_sts():
    sts = Mock()
    sts.get_session_token.return_value = {
        "Credentials": {
            "AccessKeyId": "ASIATEMPKEY",
            "SecretAccessKey": "temp/secret+key",
            "SessionToken": "FwoGZXIvYXdzEBYaDtoken==",
            "Expiration": datetime(2026, 10, 20, 6, 30, 0, tzinfo=timezone.utc),
        }
    }
    return sts


@pytest.fixture
def mock_session(mock_iam, mock_sts):
    session = Mock()
    session.region_name = None
    session.client.side_effect = lambda service, **kwargs: {"iam": mock_iam, "sts": mock_sts}[service]
    return session
