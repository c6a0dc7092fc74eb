# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Callable, Generator, Iterator
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite://")

from cipherroom.db.session import Base, engine_options
from cipherroom.services.directory import (
    SqlChannelGrantStore,
    SqlChannelRegistry,
    SqlIdentityDirectory,
    SqlMessageStore,
)
from cipherroom.services.e2e_messages import E2EMessageService
from cipherroom.services.identity import IdentityKeyStore, PrivateKeyHandle

TEST_DB_URL = "sqlite://"
_RSA_POOL_SIZE = 4


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(TEST_DB_URL, **engine_options(TEST_DB_URL))
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[Callable[[], Session]]:
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    try:
        yield factory
    finally:
        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def directory(session_factory: Callable[[], Session]) -> SqlIdentityDirectory:
    return SqlIdentityDirectory(session_factory)


@pytest.fixture()
def grant_store(session_factory: Callable[[], Session]) -> SqlChannelGrantStore:
    return SqlChannelGrantStore(session_factory)


@pytest.fixture()
def registry(session_factory: Callable[[], Session]) -> SqlChannelRegistry:
    return SqlChannelRegistry(session_factory)


@pytest.fixture()
def message_store(session_factory: Callable[[], Session]) -> SqlMessageStore:
    return SqlMessageStore(session_factory)


@pytest.fixture(scope="session")
def rsa_keys() -> list[rsa.RSAPrivateKey]:
    """Pre-generated 2048-bit identity keys shared across the test session."""
    return [
        rsa.generate_private_key(public_exponent=65537, key_size=2048)
        for _ in range(_RSA_POOL_SIZE)
    ]


@pytest.fixture()
def handles(rsa_keys: list[rsa.RSAPrivateKey]) -> list[PrivateKeyHandle]:
    return [PrivateKeyHandle(key) for key in rsa_keys]


def install_key(path: Path, key: rsa.RSAPrivateKey) -> None:
    """Write a private key where an IdentityKeyStore will find it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )


@pytest.fixture()
def key_store_factory(tmp_path: Path) -> Callable[..., IdentityKeyStore]:
    """Return a factory creating an isolated key store per simulated device."""

    def _factory(device: str, key: rsa.RSAPrivateKey | None = None) -> IdentityKeyStore:
        path = tmp_path / device / "identity.pem"
        if key is not None:
            install_key(path, key)
        return IdentityKeyStore(key_path=path, passphrase="")

    return _factory


@pytest.fixture()
def service_factory(
    directory: SqlIdentityDirectory,
    grant_store: SqlChannelGrantStore,
    registry: SqlChannelRegistry,
    key_store_factory: Callable[..., IdentityKeyStore],
) -> Callable[..., E2EMessageService]:
    """Return a factory creating one client session per user."""

    def _factory(user_id: str, key: rsa.RSAPrivateKey | None = None) -> E2EMessageService:
        return E2EMessageService(
            user_id,
            directory=directory,
            grants=grant_store,
            channels=registry,
            key_store=key_store_factory(user_id, key),
        )

    return _factory
