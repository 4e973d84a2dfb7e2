import subprocess

from pathlib import Path

import pytest

import apkresign

from apkresign import (AlignmentMode, ArtifactType, Config, ConfigurationError, SignatureType,
                       SignerTool)


@pytest.mark.parametrize("path, expected", [
    ("app-unsigned.apk", "app"),
    ("out/app-release-unsigned.aab", "app-release"),
    ("app-signed.apk", "app-signed"),
    ("unsigned.apk", "unsigned"),
    ("app-unsigned-v2.apk", "app-unsigned-v2"),
])
def test_pretty_basename(path, expected):
    assert apkresign.pretty_basename(path) == expected


@pytest.mark.parametrize("path, expected", [
    ("app.apk", ArtifactType.APK),
    ("dir.aab/app.APK", ArtifactType.APK),
    ("app.Aab", ArtifactType.AAB),
])
def test_artifact_type(path, expected):
    assert ArtifactType.from_path(path) is expected


@pytest.mark.parametrize("path", ["app.zip", "app.apks", "app", "apk"])
def test_artifact_type_unsupported(path):
    with pytest.raises(ConfigurationError, match="Unsupported build artifact"):
        ArtifactType.from_path(path)


def test_split_artifact_paths():
    assert apkresign.split_artifact_paths("a.apk|b.aab") == ["a.apk", "b.aab"]
    assert apkresign.split_artifact_paths("a.apk\nb.aab\n\n|c.apk|") == ["a.apk", "b.aab", "c.apk"]


def test_make_config_options_override_file():
    cfg = apkresign.make_config(
        dict(android_app="a.apk", keystore_alias="file", signer_tool="jarsigner", page_align=True),
        keystore_alias="option", signer_tool=None, page_align=None)
    assert cfg.artifact_paths == ["a.apk"]
    assert cfg.keystore_alias == "option"
    assert cfg.signer_tool is SignerTool.JARSIGNER
    assert cfg.page_align is AlignmentMode.PAGE


def test_make_config_defaults():
    cfg = apkresign.make_config(android_app=["a.apk"])
    assert cfg.signature_type is SignatureType.KEYSTORE
    assert cfg.page_align is AlignmentMode.AUTO
    assert cfg.signer_tool is SignerTool.AUTOMATIC
    assert cfg.debuggable_permitted is True
    assert cfg.output_name is None


def test_make_config_errors():
    with pytest.raises(ConfigurationError, match="Unknown config keys"):
        apkresign.make_config(dict(keystore_path="ks.jks"))
    with pytest.raises(ConfigurationError, match="Invalid config value"):
        apkresign.make_config(signer_scheme="v1")


def test_parse_config_yaml(tmp_path):
    cfg_file = tmp_path / "config.yml"
    cfg_file.write_text("android_app:\n  - a.apk\n  - b.aab\nsigner_tool: jarsigner\n")
    data = apkresign.parse_config_yaml(cfg_file)
    assert data == dict(android_app=["a.apk", "b.aab"], signer_tool="jarsigner")
    assert apkresign.make_config(data).artifact_paths == ["a.apk", "b.aab"]


@pytest.mark.parametrize("text", ["keystore_path: ks.jks\n", "signer_tool: zipsigner\n",
                                  "debuggable_permitted: maybe\n", "- a.apk\n"])
def test_parse_config_yaml_invalid(tmp_path, text):
    cfg_file = tmp_path / "config.yml"
    cfg_file.write_text(text)
    with pytest.raises(ConfigurationError, match="Invalid config file"):
        apkresign.parse_config_yaml(cfg_file)


def test_parse_config_yaml_empty(tmp_path):
    cfg_file = tmp_path / "config.yml"
    cfg_file.write_text("")
    assert apkresign.parse_config_yaml(cfg_file) == {}


def test_validate_keystore(tmp_path):
    apk = tmp_path / "app.apk"
    apk.write_bytes(b"")
    Config(artifact_paths=[str(apk)], keystore_url="ks.jks", keystore_password="pass",
           keystore_alias="key").validate()
    for missing in ("keystore_url", "keystore_password", "keystore_alias"):
        kwargs = dict(keystore_url="ks.jks", keystore_password="pass", keystore_alias="key")
        del kwargs[missing]
        with pytest.raises(ConfigurationError):
            Config(artifact_paths=[str(apk)], **kwargs).validate()


def test_validate_artifacts(tmp_path):
    kwargs = dict(keystore_url="ks.jks", keystore_password="pass", keystore_alias="key")
    with pytest.raises(ConfigurationError, match="No build artifact"):
        Config(artifact_paths=[], **kwargs).validate()
    with pytest.raises(ConfigurationError, match="does not exist"):
        Config(artifact_paths=[str(tmp_path / "app.apk")], **kwargs).validate()


def test_validate_certificate(tmp_path):
    apk, key = tmp_path / "app.apk", tmp_path / "key.pk8"
    apk.write_bytes(b"")
    key.write_bytes(b"")
    cfg = Config(artifact_paths=[str(apk)], signature_type=SignatureType.CERTIFICATE,
                 private_key_path=str(key), certificate_path=str(tmp_path / "cert.pem"))
    with pytest.raises(ConfigurationError, match="certificate does not exist"):
        cfg.validate()


def test_printable_masks_secrets():
    cfg = Config(artifact_paths=["a.apk"], keystore_url="https://example.com/secret/ks.jks",
                 keystore_password="s3cret", keystore_alias="key", private_key_password="k3y")
    text = "\n".join(cfg.printable())
    assert "s3cret" not in text and "k3y" not in text and "secret/" not in text
    assert "s3cret" not in repr(cfg)


@pytest.mark.parametrize("value, expected", [
    ("", ""),
    ("pass", "***"),
    ("file:///keystores/release.jks", "file:///ke***jks"),
])
def test_secure_input(value, expected):
    assert apkresign.secure_input(value) == expected


def test_build_tools_dir(tmp_path):
    for v in ("34.0.0", "35.0.0", "35.0.0-rc1", "9.0.0"):
        (tmp_path / "sdk" / "build-tools" / v).mkdir(parents=True)
    env = dict(ANDROID_SDK_ROOT=str(tmp_path / "sdk"))
    assert apkresign.get_build_tools_dir(env=env) == tmp_path / "sdk" / "build-tools" / "35.0.0"
    with pytest.raises(ConfigurationError, match="build-tools"):
        apkresign.get_build_tools_dir(env={})


def test_get_build_tool(tmp_path):
    (tmp_path / "zipalign").write_bytes(b"")
    assert apkresign.get_build_tool(tmp_path, "zipalign") == str(tmp_path / "zipalign")
    with pytest.raises(ConfigurationError, match="aapt not found"):
        apkresign.get_build_tool(tmp_path, "aapt")


def test_get_java(tmp_path, monkeypatch):
    bin_dir = tmp_path / "jdk" / "bin"
    bin_dir.mkdir(parents=True)
    (bin_dir / "keytool").write_bytes(b"")
    monkeypatch.setattr(apkresign.shutil, "which", lambda name: f"/usr/bin/{name}")
    keytool, jarsigner = apkresign.get_java(java_home=str(tmp_path / "jdk"))
    assert keytool == str(bin_dir / "keytool")
    assert jarsigner == "/usr/bin/jarsigner"


def test_command_output():
    e = subprocess.CalledProcessError(1, ["x"], output=b"out\n", stderr="err\n")
    assert apkresign.command_output(e) == "out\nerr"
    assert apkresign.command_output(subprocess.CalledProcessError(1, ["x"])) == ""


def test_config_schema_matches_keys():
    import json
    schema = json.loads(Path(apkresign.CONFIG_SCHEMA).read_text())
    assert sorted(schema["properties"]) == sorted(apkresign.CONFIG_KEYS)
