# tests/test_security.py

import pytest

from core.errors import Unauthorized, ValidationError
from core.models import CallerIdentity
from security.auth import TokenAuthenticator, require_caller
from security.input_validation import SecurityValidator
from conftest import RED, solid_png


@pytest.fixture
def authenticator():
    return TokenAuthenticator({"s3cret": "alice"})


def test_valid_bearer_token(authenticator):
    assert authenticator.authenticate("Bearer s3cret") == CallerIdentity(user_id="alice")
    assert authenticator.authenticate("bearer  s3cret ").user_id == "alice"


@pytest.mark.parametrize("header", [None, "", "Bearer", "Basic s3cret", "Bearer wrong", "s3cret"])
def test_rejected_headers(authenticator, header):
    with pytest.raises(Unauthorized):
        authenticator.authenticate(header)


def test_require_caller():
    caller = CallerIdentity(user_id="bob")
    assert require_caller(caller) is caller
    with pytest.raises(Unauthorized):
        require_caller(None)
    with pytest.raises(Unauthorized):
        require_caller(CallerIdentity(user_id=""))


def test_validate_upload_returns_decoded_image():
    name, image = SecurityValidator().validate_upload("photo.PNG", solid_png(RED, size=(20, 10)))

    assert name == "photo.PNG"
    assert image.shape == (10, 20, 3)


def test_validate_upload_size_limit():
    validator = SecurityValidator(max_file_size=10)
    with pytest.raises(ValidationError):
        validator.validate_upload("photo.png", solid_png(RED))


@pytest.mark.parametrize("filename, data", [
    ("", solid_png(RED)),
    ("photo.txt", solid_png(RED)),
    ("photo.png", b""),
    ("photo.png", b"GIF89a but not really"),
])
def test_validate_upload_rejects(filename, data):
    with pytest.raises(ValidationError):
        SecurityValidator().validate_upload(filename, data)


def test_sanitize_filename():
    assert SecurityValidator.sanitize_filename("../../etc/passwd") == "_.._etc_passwd"
    assert SecurityValidator.sanitize_filename("my<photo>.jpg") == "myphoto.jpg"
    assert SecurityValidator.sanitize_filename(".hidden.png") == "hidden.png"
    assert len(SecurityValidator.sanitize_filename("a" * 300 + ".png")) <= 255


def test_validate_directory(tmp_path):
    assert SecurityValidator.validate_directory(str(tmp_path))
    assert not SecurityValidator.validate_directory(str(tmp_path / "missing"))
