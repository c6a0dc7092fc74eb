from pathlib import Path

import pytest
from pydantic import ValidationError

from cipherroom.core.settings import Settings


def test_defaults() -> None:
    config = Settings()
    assert config.rsa_key_size == 2048
    assert config.unwrap_attempt_limit >= 1
    assert config.undecryptable_placeholder


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CIPHERROOM_KEY_STORE_DIR", str(tmp_path))
    monkeypatch.setenv("CIPHERROOM_RSA_KEY_SIZE", "3072")
    monkeypatch.setenv("CIPHERROOM_UNDECRYPTABLE_PLACEHOLDER", "[locked]")

    config = Settings()

    assert config.identity_key_path == tmp_path / "identity.pem"
    assert config.rsa_key_size == 3072
    assert config.undecryptable_placeholder == "[locked]"


def test_identity_key_path_expands_user(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    config = Settings(key_store_dir=Path("~/keys"))
    assert config.identity_key_path == tmp_path / "keys" / "identity.pem"


@pytest.mark.parametrize(
    "overrides",
    [{"rsa_key_size": 1024}, {"unwrap_attempt_limit": 0}],
)
def test_unsafe_values_are_rejected(overrides: dict[str, int]) -> None:
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_assignment_is_validated() -> None:
    config = Settings()
    with pytest.raises(ValidationError):
        config.rsa_key_size = 512
