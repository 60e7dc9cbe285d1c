"""
Shared fixtures: one RSA key pair for the whole session (generation is the
slow part) and a frozen clock so "now" timestamps are predictable.
"""

import pytest

from pcsp import crypto
from pcsp.protocol import ProtocolConfig

FIXED_NOW = 1_600_000_000


@pytest.fixture(scope="session")
def keypair():
    """(DecryptionKey, EncryptionKey) from a 1024-bit RSA key."""
    return crypto.generate_keypair(1024)


@pytest.fixture
def enc_key(keypair):
    return keypair[1]


@pytest.fixture
def keyed_config(keypair):
    return ProtocolConfig.from_key(keypair[0])


@pytest.fixture
def plain_config():
    return ProtocolConfig()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW
