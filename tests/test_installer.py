import os

import pytest
from cryptography.fernet import Fernet

import installer


@pytest.fixture
def keyfile(tmp_path, monkeypatch):
    monkeypatch.delenv(installer.ENC_KEY_ENV, raising=False)
    path = tmp_path / "keywarden.key"
    installer.fncEnsureKeyfile(path)
    return path


class TestKeyfile:
    def test_created_private_and_loadable(self, keyfile):
        assert os.stat(keyfile).st_mode & 0o777 == 0o600
        key = installer.fncLoadEncKey(keyfile)
        Fernet(key.encode())

    def test_existing_key_is_kept(self, keyfile):
        before = keyfile.read_text()
        installer.fncEnsureKeyfile(keyfile)
        assert keyfile.read_text() == before


class TestEnvfile:
    def test_render_never_contains_plaintext(self):
        body = installer.fncRenderEnvfile("ops", 300, region="eu-west-1", access_key="AKIAEXAMPLE",
                                          secret_blob="fernet:abc", sudo_group="admins")
        assert "KW_GROUP_NAME='ops'" in body
        assert "KW_INTERVAL=300" in body
        assert "KW_SUDO_GROUP='admins'" in body
        assert "AWS_SECRET_ACCESS_KEY=''" in body
        assert "KW_AWS_SECRET_ENC='fernet:abc'" in body

    def test_render_default_chain_has_no_keys(self):
        body = installer.fncRenderEnvfile("ops", 900)
        assert "AWS_ACCESS_KEY_ID" not in body

    def test_quote_survives_single_quotes(self):
        assert installer.fncShQuote("it's") == "'it'\"'\"'s'"

    def test_migrates_plaintext_secret(self, tmp_path, keyfile):
        env = tmp_path / "keywarden.env"
        env.write_text("KW_GROUP_NAME='ops'\nAWS_ACCESS_KEY_ID='AKIA'\nAWS_SECRET_ACCESS_KEY='hunter2'\n")
        assert installer.fncEncryptIfNeededInEnv(env, keyfile) is True

        text = env.read_text()
        assert "hunter2" not in text
        assert "AWS_SECRET_ACCESS_KEY=''" in text
        blob = [l for l in text.splitlines() if l.startswith("KW_AWS_SECRET_ENC=")][0]
        token = blob.split("=", 1)[1].strip("'").split(":", 1)[1]
        key = installer.fncLoadEncKey(keyfile)
        assert Fernet(key.encode()).decrypt(token.encode()) == b"hunter2"
        assert os.stat(env).st_mode & 0o777 == 0o600

    def test_nothing_to_migrate(self, tmp_path, keyfile):
        env = tmp_path / "keywarden.env"
        env.write_text("KW_GROUP_NAME='ops'\nAWS_SECRET_ACCESS_KEY=''\n")
        assert installer.fncEncryptIfNeededInEnv(env, keyfile) is False


class TestModules:
    def test_copy_and_change_detection(self, tmp_path):
        dst = tmp_path / "opt"
        manifest = installer.fncCopyModules(installer.ROOT_DIR, dst)
        assert set(manifest) == set(installer.MODULES)
        assert os.stat(dst / "keywarden.py").st_mode & 0o777 == 0o700
        assert installer.fncChangedModules(installer.ROOT_DIR, dst) == []

        (dst / "kw_state.py").write_text("# tampered\n")
        assert installer.fncChangedModules(installer.ROOT_DIR, dst) == ["kw_state.py"]

    def test_service_unit(self):
        unit = installer.fncRenderServiceUnit()
        assert "Type=simple" in unit
        assert "ExecStart=/usr/bin/python3 /opt/keywarden/keywarden.py" in unit
        assert "EnvironmentFile=-/etc/keywarden.key" in unit
