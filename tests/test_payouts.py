import base58
import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from errors import ConfigurationError
from payouts import _with_retries, keypair_from_secret, load_treasury_signer, to_public_key

from conftest import secret_b58


def test_signer_from_base58_export():
    kp = Keypair()
    signer = load_treasury_signer(str(kp.pubkey()), secret_b58(kp))
    assert signer.pubkey() == kp.pubkey()


def test_signer_from_byte_array():
    kp = Keypair()
    arr = "[" + ",".join(str(b) for b in bytes(kp)) + "]"
    assert keypair_from_secret(arr).pubkey() == kp.pubkey()
    assert keypair_from_secret(arr.strip("[]")).pubkey() == kp.pubkey()


def test_signer_from_32_byte_seed():
    seed = bytes(range(32))
    expected = Keypair.from_seed(seed)
    assert keypair_from_secret(base58.b58encode(seed).decode()).pubkey() == expected.pubkey()


def test_mismatched_signer_is_a_config_error():
    with pytest.raises(ConfigurationError, match="does not match"):
        load_treasury_signer(str(Keypair().pubkey()), secret_b58(Keypair()))


@pytest.mark.parametrize(
    "address,credential",
    [
        ("", "abc"),
        (None, None),
        ("not-a-key", "abc"),
    ],
)
def test_incomplete_config(address, credential):
    with pytest.raises(ConfigurationError):
        load_treasury_signer(address, credential)


def test_bad_credential_length():
    kp = Keypair()
    with pytest.raises(ConfigurationError):
        load_treasury_signer(str(kp.pubkey()), base58.b58encode(b"\x01" * 40).decode())


def test_byte_array_out_of_range():
    with pytest.raises(ValueError):
        keypair_from_secret("1,2,300")


def test_to_public_key_inputs():
    kp = Keypair()
    assert to_public_key(str(kp.pubkey())) == kp.pubkey()
    assert to_public_key(bytes(kp.pubkey())) == kp.pubkey()
    assert to_public_key(kp.pubkey()) == kp.pubkey()
    with pytest.raises(ValueError):
        to_public_key("")
    with pytest.raises(ValueError):
        to_public_key(b"\x00" * 31)
    with pytest.raises(ValueError):
        to_public_key(base58.b58encode(b"\x07" * 20).decode())


async def test_retries_until_success():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("busy")
        return "ok"

    assert await _with_retries("flaky", flaky, attempts=3, delay=0) == "ok"
    assert len(calls) == 3


async def test_retries_give_up_with_last_error():
    async def down():
        raise TimeoutError("still down")

    with pytest.raises(TimeoutError, match="still down"):
        await _with_retries("down", down, attempts=2, delay=0)


def test_pubkey_roundtrip_is_stable():
    pk = Pubkey.from_string("11111111111111111111111111111111")
    assert str(to_public_key(str(pk))) == "11111111111111111111111111111111"
