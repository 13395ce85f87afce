
import pytest

from shieldscan.blockstore import MemoryBlockSource
from shieldscan.scan_core.crypto import generate_rsa_keypair, load_private_key
from shieldscan.scan_core.keys import decode_viewing_key, generate_sapling_key, generate_unified_key
from shieldscan.scanner import ScanOrchestrator

BIRTHDAY = 1_000_000
BLOCK_TIME = 1_700_000_000  # 2023-11-14 22:13:20 UTC


@pytest.fixture(scope="session")
def rsa_keys():
    """(private_pem, public_pem); RSA generation is slow, share it."""
    return generate_rsa_keypair()


@pytest.fixture(scope="session")
def private_key(rsa_keys):
    return load_private_key(rsa_keys[0])


@pytest.fixture(scope="session")
def public_pem(rsa_keys):
    return rsa_keys[1]


@pytest.fixture(scope="session")
def uvk():
    return generate_unified_key(b"\x01" * 32)


@pytest.fixture(scope="session")
def vk(uvk):
    return decode_viewing_key(uvk)


@pytest.fixture(scope="session")
def other_uvk():
    return generate_unified_key(b"\x02" * 32)


@pytest.fixture(scope="session")
def other_vk(other_uvk):
    return decode_viewing_key(other_uvk)


@pytest.fixture(scope="session")
def sapling_key():
    return generate_sapling_key(b"\x03" * 32)


@pytest.fixture
def source():
    return MemoryBlockSource(tip=BIRTHDAY + 10)


@pytest.fixture
def orchestrator(source, private_key):
    return ScanOrchestrator(source, private_key=private_key, chunk_blocks=4,
                            max_workers=2, parallel_min=64, allow_plaintext=True)
