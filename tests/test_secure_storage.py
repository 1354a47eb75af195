import os
import stat

from iptv_service.utils.secure_storage import ENCRYPTED_PREFIX, ConfigCipher, load_or_create_key


class TestLoadOrCreateKey:
    def test_creates_owner_only_key(self, tmp_path):
        path = tmp_path / "keys" / "secret.key"
        key = load_or_create_key(path)
        assert len(key) == 32
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert load_or_create_key(path) == key

    def test_regenerates_key_of_wrong_length(self, tmp_path):
        path = tmp_path / "secret.key"
        path.write_bytes(b"short")
        assert len(load_or_create_key(path)) == 32


class TestConfigCipher:
    def test_encrypt_decrypt(self, cipher):
        stored = cipher.encrypt("http://provider.test/get.php?username=u&password=p")
        assert stored.startswith(ENCRYPTED_PREFIX)
        assert "password" not in stored
        assert cipher.decrypt(stored) == "http://provider.test/get.php?username=u&password=p"

    def test_fresh_iv_per_value(self, cipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_empty_values(self, cipher):
        assert cipher.encrypt("") == ""
        assert cipher.decrypt(None) == ""

    def test_legacy_plaintext_passes_through(self, cipher):
        assert cipher.decrypt("http://legacy.test/list.m3u") == "http://legacy.test/list.m3u"

    def test_tampered_or_foreign_values_decrypt_to_empty(self, cipher, tmp_path):
        stored = cipher.encrypt("secret")
        tampered = stored[:-4] + ("AAAA" if not stored.endswith("AAAA") else "BBBB")
        assert cipher.decrypt(tampered) == ""
        assert cipher.decrypt(f"{ENCRYPTED_PREFIX}no-separator") == ""

        other = ConfigCipher.from_key_file(tmp_path / "other.key")
        assert other.decrypt(stored) == ""
