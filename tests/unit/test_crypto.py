import pytest
from parking_sync.security.crypto import DecryptionError, decrypt_secret, encrypt_secret

KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

def test_round_trip_and_format():
    token = encrypt_secret("s1-πάσβορντ", KEY)
    iv, tag, cipher = token.split(":")
    assert len(iv) == 32
    assert len(tag) == 32
    assert cipher
    assert decrypt_secret(token, KEY) == "s1-πάσβορντ"

def test_each_encryption_uses_fresh_iv():
    assert encrypt_secret("same", KEY) != encrypt_secret("same", KEY)

def test_tampered_ciphertext_is_rejected():
    iv, tag, cipher = encrypt_secret("secret", KEY).split(":")
    flipped = format(int(cipher[:2], 16) ^ 0x01, "02x") + cipher[2:]
    with pytest.raises(DecryptionError):
        decrypt_secret(f"{iv}:{tag}:{flipped}", KEY)

@pytest.mark.parametrize("token", ["", "abc", "zz:zz:zz", "a:b"])
def test_malformed_tokens(token):
    with pytest.raises(DecryptionError):
        decrypt_secret(token, KEY)

def test_wrong_key_length():
    with pytest.raises(ValueError):
        encrypt_secret("x", "abcd")

@pytest.mark.parametrize("bad_key", ["abcd", "zz"])
def test_unusable_key_on_decrypt(bad_key):
    token = encrypt_secret("secret", KEY)
    with pytest.raises(DecryptionError) as exc:
        decrypt_secret(token, bad_key)
    assert "Invalid encryption key" in str(exc.value)

def test_development_key_fallback(monkeypatch):
    from parking_sync.config import settings
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", None)
    assert decrypt_secret(encrypt_secret("dev")) == "dev"
