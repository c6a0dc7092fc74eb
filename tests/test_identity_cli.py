import json
from pathlib import Path

import pytest

from cipherroom.scripts import identity as cli


@pytest.fixture()
def sql_stores(mocker, directory, grant_store, registry):
    """Point the CLI at the test database instead of the configured one."""
    mocker.patch("cipherroom.db.session.create_tables")
    mocker.patch.object(cli, "SqlIdentityDirectory", return_value=directory)
    mocker.patch.object(cli, "SqlChannelGrantStore", return_value=grant_store)
    mocker.patch.object(cli, "SqlChannelRegistry", return_value=registry)
    return directory


def test_show_without_key(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    key_file = tmp_path / "identity.pem"

    assert cli.main(["--key-file", str(key_file), "show"]) == 1
    assert "No identity key" in capsys.readouterr().err


def test_show_prints_public_jwk(
    key_store_factory, rsa_keys, capsys: pytest.CaptureFixture[str]
) -> None:
    key_file = key_store_factory("laptop", rsa_keys[0]).key_path

    assert cli.main(["--key-file", str(key_file), "show"]) == 0

    printed = json.loads(capsys.readouterr().out)
    assert printed["kty"] == "RSA"
    assert "d" not in printed


def test_publish_creates_and_records_identity(
    tmp_path: Path, sql_stores, capsys: pytest.CaptureFixture[str]
) -> None:
    key_file = tmp_path / "identity.pem"

    assert cli.main(["--key-file", str(key_file), "publish", "--user-id", "alice"]) == 0

    assert "alice: published" in capsys.readouterr().out
    assert key_file.exists()


def test_publish_twice_reports_existing_key(
    tmp_path: Path, sql_stores, capsys: pytest.CaptureFixture[str]
) -> None:
    args = ["--key-file", str(tmp_path / "identity.pem"), "publish", "--user-id", "alice"]
    cli.main(args)
    capsys.readouterr()

    assert cli.main(args) == 0
    assert "alice: already_published" in capsys.readouterr().out


def test_publish_requires_user_id() -> None:
    with pytest.raises(SystemExit):
        cli.main(["publish"])
