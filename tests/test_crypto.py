import pytest

from config import BLOB_DELIMITER, KEY_LENGTH, SALT_LENGTH
from errors import AuthenticationFailedError, MalformedBlobError


def _flip_hex(segment):
    """Flip the lowest bit of the first byte of a hex segment."""
    first = int(segment[:2], 16) ^ 0x01
    return f"{first:02x}" + segment[2:]


class TestEncryptDecrypt:

    @pytest.mark.parametrize("plaintext", [
        "",
        "hello",
        "密碼 – mot de passe – пароль 🔐",
        "x" * 12_000,
    ])
    def test_round_trip(self, cipher, plaintext):
        blob = cipher.encrypt(plaintext, "correct horse")
        assert cipher.decrypt(blob, "correct horse") == plaintext

    def test_blob_format(self, cipher):
        salt, iv, tag, ciphertext = cipher.encrypt("abc", "pw").split(BLOB_DELIMITER)
        assert len(bytes.fromhex(salt)) == SALT_LENGTH
        assert len(bytes.fromhex(iv)) == 16
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == 3

    def test_encryption_is_not_deterministic(self, cipher):
        first = cipher.encrypt("same text", "pw")
        second = cipher.encrypt("same text", "pw")
        assert first != second
        assert first.split(BLOB_DELIMITER)[0] != second.split(BLOB_DELIMITER)[0]

    def test_wrong_password(self, cipher):
        blob = cipher.encrypt("secret", "right")
        with pytest.raises(AuthenticationFailedError):
            cipher.decrypt(blob, "wrong")

    @pytest.mark.parametrize("index", [2, 3])
    def test_tampering_is_detected(self, cipher, index):
        parts = cipher.encrypt("secret payload", "pw").split(BLOB_DELIMITER)
        parts[index] = _flip_hex(parts[index])
        with pytest.raises(AuthenticationFailedError):
            cipher.decrypt(BLOB_DELIMITER.join(parts), "pw")

    def test_surrounding_whitespace_is_ignored(self, cipher):
        blob = cipher.encrypt("data", "pw")
        assert cipher.decrypt(f"  {blob}\n", "pw") == "data"


class TestMalformedBlob:

    @pytest.mark.parametrize("blob", [
        "",
        "abcd",
        "aa:bb:cc",
        "aa:bb:cc:dd:ee",
    ])
    def test_wrong_segment_count(self, cipher, blob):
        with pytest.raises(MalformedBlobError):
            cipher.decrypt(blob, "pw")

    def test_non_hex_segment(self, cipher):
        parts = cipher.encrypt("data", "pw").split(BLOB_DELIMITER)
        parts[3] = "zz" + parts[3][2:]
        with pytest.raises(MalformedBlobError):
            cipher.decrypt(BLOB_DELIMITER.join(parts), "pw")

    def test_short_iv(self, cipher):
        parts = cipher.encrypt("data", "pw").split(BLOB_DELIMITER)
        parts[1] = parts[1][:8]
        with pytest.raises(MalformedBlobError):
            cipher.decrypt(BLOB_DELIMITER.join(parts), "pw")

    def test_malformed_is_a_distinct_failure(self, cipher):
        with pytest.raises(MalformedBlobError) as excinfo:
            cipher.decrypt("only:three:parts", "pw")
        assert not isinstance(excinfo.value, AuthenticationFailedError)


class TestKeyDerivation:

    def test_derive_key_is_deterministic(self, cipher):
        assert cipher.derive_key("pw", b"salt") == cipher.derive_key("pw", b"salt")
        assert len(cipher.derive_key("pw", b"salt")) == KEY_LENGTH

    def test_derive_key_depends_on_salt_and_password(self, cipher):
        base = cipher.derive_key("pw", b"salt-a")
        assert base != cipher.derive_key("pw", b"salt-b")
        assert base != cipher.derive_key("pw2", b"salt-a")

    def test_str_salt_is_used_as_utf8(self, cipher):
        assert cipher.derive_key("pw", "abcd") == cipher.derive_key("pw", b"abcd")


class TestPasswordHash:

    def test_verify(self, cipher):
        salt = cipher.new_salt()
        stored = cipher.hash_password("hunter2", salt)
        assert cipher.verify_password("hunter2", stored, salt)
        assert not cipher.verify_password("hunter3", stored, salt)

    def test_new_salt_is_random_hex(self, cipher):
        first, second = cipher.new_salt(), cipher.new_salt()
        assert first != second
        assert len(bytes.fromhex(first)) == SALT_LENGTH
