"""Tests for SecretBox sealing and opening."""

import base64

import pytest

from credit_pot.src.errors import ConfigError, DecryptionError
from credit_pot.src.secret_box import HEADER_LENGTH, IV_LENGTH, SALT_LENGTH, SecretBox


def flip_byte(sealed: str, index: int) -> str:
    """Flip one byte of the decoded value and re-encode it."""
    raw = bytearray(base64.b64decode(sealed))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


class TestRoundTrip:
    """open(seal(s)) == s."""

    @pytest.mark.parametrize(
        "plaintext",
        ["", "a", "access-token-123", "£ and 💳 survive", "x" * 5000],
    )
    def test_round_trip(self, box: SecretBox, plaintext: str) -> None:
        """Sealed values open back to the original string."""
        assert box.open(box.seal(plaintext)) == plaintext

    def test_seal_is_not_deterministic(self, box: SecretBox) -> None:
        """Fresh salt and IV mean two seals of the same text differ."""
        assert box.seal("same") != box.seal("same")

    def test_layout(self, box: SecretBox) -> None:
        """Sealed value is salt, iv, tag and ciphertext, base64 encoded."""
        raw = base64.b64decode(box.seal("hello"))
        assert len(raw) == HEADER_LENGTH + len(b"hello")

    def test_open_with_same_passphrase_in_new_box(self, box: SecretBox) -> None:
        """The key travels only as salt, so any box with the passphrase can open."""
        other = SecretBox("test-passphrase", iterations=box.iterations)
        assert other.open(box.seal("portable")) == "portable"


class TestTamperDetection:
    """Any modification raises DecryptionError."""

    @pytest.mark.parametrize(
        "index",
        [0, SALT_LENGTH - 1, SALT_LENGTH, SALT_LENGTH + IV_LENGTH, HEADER_LENGTH - 1, HEADER_LENGTH, -1],
    )
    def test_flipped_byte_is_rejected(self, box: SecretBox, index: int) -> None:
        """Flipping a byte in salt, iv, tag or ciphertext fails authentication."""
        sealed = box.seal("sensitive token")
        with pytest.raises(DecryptionError):
            box.open(flip_byte(sealed, index))

    def test_edited_text_is_rejected(self, box: SecretBox) -> None:
        """Editing a character of the encoded text is detected."""
        sealed = box.seal("sensitive token")
        edited = ("B" if sealed[0] != "B" else "C") + sealed[1:]
        with pytest.raises(DecryptionError):
            box.open(edited)

    def test_wrong_passphrase(self, box: SecretBox) -> None:
        """A different passphrase derives a different key."""
        other = SecretBox("another-passphrase", iterations=box.iterations)
        with pytest.raises(DecryptionError):
            other.open(box.seal("secret"))

    @pytest.mark.parametrize("sealed", ["not base64!!", "AAAA", ""])
    def test_malformed_input(self, box: SecretBox, sealed: str) -> None:
        """Garbage and too-short values are rejected, not decrypted."""
        with pytest.raises(DecryptionError):
            box.open(sealed)


def test_empty_passphrase_is_config_error() -> None:
    """A box cannot be built without a passphrase."""
    with pytest.raises(ConfigError):
        SecretBox("")
