import base64
import threading

import pytest

from productconf.app import security
from productconf.app.app_config import MemoryAppConfig
from productconf.app.security import (
    CONFIG_KEY,
    CONFIG_SALT,
    CONFIG_VECTOR,
    CipherError,
    DecryptLengthError,
    KeyMaterial,
    KeyMaterialError,
    SecureCipher,
)


def _material(salt_length: int = 8) -> KeyMaterial:
    return KeyMaterial(key=b"k" * 32, vector=b"v" * 16, salt_length=salt_length)


@pytest.mark.parametrize("text", ["a", "hello world", "päßwörd ✓", "x" * 1000])
def test_encrypt_decrypt_round_trip(text):
    cipher = SecureCipher(material=_material())

    data = cipher.encrypt(text)

    assert len(data) % security.BLOCK_SIZE == 0
    assert cipher.decrypt(data) == text
    assert cipher.decrypt_string(cipher.encrypt_string(text)) == text


def test_empty_strings_skip_the_cipher():
    cipher = SecureCipher(material=_material())

    assert cipher.encrypt_string("") == ""
    assert cipher.decrypt_string("") == ""


def test_encryption_is_salted():
    cipher = SecureCipher(material=_material())

    assert cipher.encrypt_string("same") != cipher.encrypt_string("same")


def test_ciphertext_covers_both_salts():
    cipher = SecureCipher(material=_material(salt_length=20))

    # 20 + 3 + 20 bytes pad up to 48.
    assert len(cipher.encrypt("abc")) == 48


def test_decrypt_rejects_payload_shorter_than_salts():
    short_salt = SecureCipher(material=_material(salt_length=4))
    long_salt = SecureCipher(material=_material(salt_length=64))

    data = short_salt.encrypt("x")

    with pytest.raises(DecryptLengthError) as excinfo:
        long_salt.decrypt(data)
    assert excinfo.value.salt_length == 64
    assert excinfo.value.length == 9


def test_decrypt_rejects_unaligned_ciphertext():
    cipher = SecureCipher(material=_material())
    data = cipher.encrypt("value")

    with pytest.raises(CipherError):
        cipher.decrypt(data[:-1])
    with pytest.raises(CipherError):
        cipher.decrypt(b"")


def test_decrypt_with_other_key_fails_cleanly():
    cipher = SecureCipher(material=_material())
    other = SecureCipher(
        material=KeyMaterial(key=b"o" * 32, vector=b"v" * 16, salt_length=8)
    )
    data = cipher.encrypt("secret")

    try:
        result = other.decrypt(data)
    except CipherError:
        return
    # Unauthenticated CBC: a wrong key only fails when the padding breaks.
    assert result != "secret"


def test_decrypt_string_rejects_invalid_base64():
    cipher = SecureCipher(material=_material())

    with pytest.raises(CipherError):
        cipher.decrypt_string("not base64!!")


def test_key_material_validates_lengths():
    with pytest.raises(KeyMaterialError):
        KeyMaterial(key=b"short", vector=b"v" * 16, salt_length=8)
    with pytest.raises(KeyMaterialError):
        KeyMaterial(key=b"k" * 32, vector=b"v" * 8, salt_length=8)
    with pytest.raises(KeyMaterialError):
        KeyMaterial(key=b"k" * 32, vector=b"v" * 16, salt_length=0)


def test_salt_length_is_little_endian_int32():
    encoded = security.encode_salt_length(3000)

    assert base64.b64decode(encoded) == (3000).to_bytes(4, "little")
    assert security.decode_salt_length(encoded) == 3000


def test_cipher_generates_and_persists_missing_material():
    store = MemoryAppConfig()

    cipher = SecureCipher(store)

    assert store.get(CONFIG_KEY)
    assert store.get(CONFIG_VECTOR)
    assert store.get(CONFIG_SALT)
    material = KeyMaterial.from_encoded(
        store.get(CONFIG_KEY), store.get(CONFIG_VECTOR), store.get(CONFIG_SALT)
    )
    assert len(material.key) == 32
    assert len(material.vector) == security.BLOCK_SIZE
    assert 8 <= material.salt_length < 32
    assert cipher.salt_length == material.salt_length
    assert cipher.decrypt(cipher.encrypt("round trip")) == "round trip"


def test_two_ciphers_share_stored_material():
    store = MemoryAppConfig()
    first = SecureCipher(store)
    second = SecureCipher(store)

    assert second.decrypt_string(first.encrypt_string("shared")) == "shared"


def test_cleared_material_is_regenerated():
    store = MemoryAppConfig()
    SecureCipher(store)
    old_key = store.get(CONFIG_KEY)

    for name in security.KEY_MATERIAL_NAMES:
        store.remove(name)
    cipher = SecureCipher(store)

    assert store.get(CONFIG_KEY) != old_key
    assert cipher.decrypt_string(cipher.encrypt_string("fresh")) == "fresh"


def test_partial_material_triggers_regeneration():
    store = MemoryAppConfig()
    SecureCipher(store)
    old_vector = store.get(CONFIG_VECTOR)
    store.remove(CONFIG_SALT)

    cipher = SecureCipher(store)

    assert store.get(CONFIG_SALT)
    assert store.get(CONFIG_VECTOR) != old_vector
    assert cipher.decrypt_string(cipher.encrypt_string("partial")) == "partial"


def test_corrupt_material_triggers_regeneration():
    store = MemoryAppConfig(
        {CONFIG_KEY: "%%%", CONFIG_VECTOR: "also-bad", CONFIG_SALT: "AA=="}
    )

    cipher = SecureCipher(store)

    assert store.get(CONFIG_KEY) != "%%%"
    assert cipher.decrypt_string(cipher.encrypt_string("healed")) == "healed"


def test_concurrent_construction_generates_material_once(monkeypatch):
    store = MemoryAppConfig()
    generated = []
    real_generator = security.generate_key_material

    def counting_generator(settings=None):
        material = real_generator(settings)
        generated.append(material)
        return material

    monkeypatch.setattr(security, "generate_key_material", counting_generator)

    barrier = threading.Barrier(8)
    ciphers: list[SecureCipher] = []

    def build():
        barrier.wait()
        ciphers.append(SecureCipher(store))

    threads = [threading.Thread(target=build) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(generated) == 1
    token = ciphers[0].encrypt_string("everyone agrees")
    assert all(cipher.decrypt_string(token) == "everyone agrees" for cipher in ciphers)


def test_new_keys_regenerates_only_named_entry():
    store = MemoryAppConfig()
    SecureCipher(store)
    before = {name: store.get(name) for name in security.KEY_MATERIAL_NAMES}

    rewritten = security.new_keys(store, CONFIG_VECTOR)

    assert rewritten == (CONFIG_VECTOR,)
    assert store.get(CONFIG_KEY) == before[CONFIG_KEY]
    assert store.get(CONFIG_SALT) == before[CONFIG_SALT]
    assert store.get(CONFIG_VECTOR) != before[CONFIG_VECTOR]


def test_new_keys_rejects_unknown_entry():
    with pytest.raises(KeyMaterialError):
        security.new_keys(MemoryAppConfig(), "ConfigPepper")


def test_generated_key_and_vector_sizes():
    assert len(security.generate_encryption_key(16)) == 16
    assert len(security.generate_encryption_key()) == 32
    assert len(security.generate_encryption_vector()) == security.BLOCK_SIZE
    assert security.generate_encryption_key() != security.generate_encryption_key()
    with pytest.raises(KeyMaterialError):
        security.generate_encryption_key(20)


def test_key_material_rejects_oversized_salt_length():
    with pytest.raises(KeyMaterialError):
        KeyMaterial(
            key=b"k" * 32,
            vector=b"v" * 16,
            salt_length=security.MAX_SALT_LENGTH + 1,
        )


def test_oversized_stored_salt_length_is_regenerated():
    store = MemoryAppConfig()
    SecureCipher(store)
    store.set(CONFIG_SALT, security.encode_salt_length(2_000_000_000))

    cipher = SecureCipher(store)

    assert 8 <= cipher.salt_length < 32
    assert security.decode_salt_length(store.get(CONFIG_SALT)) == cipher.salt_length
    assert cipher.decrypt_string(cipher.encrypt_string("bounded")) == "bounded"
