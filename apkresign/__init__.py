#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
apkresign - resign APKs & AABs

apkresign removes any existing signature from an APK or AAB, signs it again
(with a keystore, a key & certificate, or a PKCS#11 token, using apksigner or
jarsigner), verifies the result, and zipaligns it; page alignment is detected
from the extractNativeLibs attribute in AndroidManifest.xml unless forced.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
import subprocess
import sys

from dataclasses import field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic.dataclasses import dataclass
from ruamel.yaml import YAML

__version__ = "0.1.0"
NAME = "apkresign"

CLEAN_LANG_ENV = dict(LC_ALL="C.UTF-8", LANG="", LANGUAGE="")

SDK_ENV = ("ANDROID_HOME", "ANDROID_SDK_ROOT", "ANDROID_SDK")

SECRET_FLAGS = ("--ks-pass", "--key-pass", "-storepass", "-keypass")
SECRET_MASK = "***"

CONFIG_SCHEMA = Path(__file__).with_name("schemas") / "config.json"
CONFIG_KEYS = (
    "android_app", "keystore_url", "keystore_password", "keystore_alias",
    "private_key_password", "signature_type", "certificate_path", "private_key_path",
    "pkcs11_provider_arg", "page_align", "signer_scheme", "signer_tool",
    "debuggable_permitted", "output_name", "work_dir", "java_home", "build_tools_dir",
)


class Error(Exception):
    """Base class for errors."""


class ConfigurationError(Error):
    """Bad or missing input, or unsupported signer tool/artifact combination."""


class InvalidConfigurationError(Error):
    """Signature configuration without a usable variant."""


class KeystoreReadError(Error):
    """Keystore could not be read."""


class UnsignError(Error):
    """Removing the existing signature failed."""


class SignError(Error):
    """Signing failed."""


class VerificationError(Error):
    """Verifying the signature failed."""


class AlignmentError(Error):
    """Zipaligning failed."""


class ManifestParseError(Error):
    """
    AndroidManifest.xml could not be read.

    The cause is one of "zip" (archive could not be opened), "resources"
    (resources.arsc could not be parsed) or "manifest" (AndroidManifest.xml
    could not be decoded).
    """

    def __init__(self, msg: str, cause: str) -> None:
        super().__init__(msg)
        self.cause = cause


class ArtifactType(Enum):
    """Build artifact type, by file extension."""
    APK = ".apk"
    AAB = ".aab"

    @classmethod
    def from_path(cls, path: Any) -> ArtifactType:
        r"""
        Get artifact type from (case-insensitive) file extension.

        >>> ArtifactType.from_path("out/app-release.APK")
        <ArtifactType.APK: '.apk'>
        >>> ArtifactType.from_path(Path("app.aab"))
        <ArtifactType.AAB: '.aab'>
        >>> try:
        ...     ArtifactType.from_path("app.zip")
        ... except ConfigurationError as e:
        ...     print(e)
        Unsupported build artifact (expected .apk or .aab): 'app.zip'

        """
        ext = os.path.splitext(str(path))[1].lower()
        for t in cls:
            if t.value == ext:
                return t
        raise ConfigurationError(f"Unsupported build artifact (expected .apk or .aab): {str(path)!r}")


class AlignmentMode(Enum):
    """Page alignment: detect from manifest, force page alignment, or force 4-byte alignment."""
    AUTO = "automatic"
    PAGE = "true"
    STANDARD = "false"


class SignerScheme(Enum):
    """Signature scheme version to enable explicitly (apksigner only)."""
    AUTOMATIC = "automatic"
    V2 = "v2"
    V3 = "v3"
    V4 = "v4"


class SignerTool(Enum):
    """Signing back-end."""
    AUTOMATIC = "automatic"
    APKSIGNER = "apksigner"
    JARSIGNER = "jarsigner"


class SignatureType(Enum):
    """Signing key material."""
    KEYSTORE = "keystore"
    CERTIFICATE = "certificate"
    PKCS11 = "pkcs11"


@dataclass(frozen=True)
class Artifact:
    """Build artifact (APK or AAB)."""
    path: Path
    type: ArtifactType

    @classmethod
    def from_path(_cls, path: Any) -> Artifact:
        """Create from path; the type is derived from the file extension."""
        return Artifact(Path(path), ArtifactType.from_path(path))


@dataclass
class PipelineResult:
    """Resigned artifact paths, by type."""
    apks: List[Path] = field(default_factory=list)
    aabs: List[Path] = field(default_factory=list)

    def add(self, artifact_type: ArtifactType, path: Path) -> None:
        """Record output path."""
        (self.apks if artifact_type is ArtifactType.APK else self.aabs).append(path)

    def env(self) -> Dict[str, str]:
        r"""
        Output values to export.

        >>> res = PipelineResult(apks=[Path("a.apk"), Path("b.apk")])
        >>> for k, v in res.env().items():
        ...     print(f"{k}={v}")
        BITRISE_SIGNED_APK_PATH=b.apk
        BITRISE_SIGNED_APK_PATH_LIST=a.apk|b.apk
        BITRISE_APK_PATH=b.apk
        >>> PipelineResult().env()
        {}

        """
        env = {}
        for kind, paths in (("APK", self.apks), ("AAB", self.aabs)):
            if paths:
                env[f"BITRISE_SIGNED_{kind}_PATH"] = str(paths[-1])
                env[f"BITRISE_SIGNED_{kind}_PATH_LIST"] = "|".join(str(p) for p in paths)
                env[f"BITRISE_{kind}_PATH"] = str(paths[-1])
        return env


@dataclass(frozen=True)
class Config:
    """Resign config."""
    artifact_paths: List[str]
    keystore_url: Optional[str] = None
    keystore_password: Optional[str] = field(default=None, repr=False)
    keystore_alias: Optional[str] = None
    private_key_password: Optional[str] = field(default=None, repr=False)
    signature_type: SignatureType = SignatureType.KEYSTORE
    certificate_path: Optional[str] = None
    private_key_path: Optional[str] = None
    pkcs11_provider_arg: Optional[str] = None
    page_align: AlignmentMode = AlignmentMode.AUTO
    signer_scheme: SignerScheme = SignerScheme.AUTOMATIC
    signer_tool: SignerTool = SignerTool.AUTOMATIC
    debuggable_permitted: bool = True
    output_name: Optional[str] = None
    work_dir: Optional[str] = None
    java_home: Optional[str] = None
    build_tools_dir: Optional[str] = None

    def validate(self) -> None:
        """Check that required inputs are set and artifacts exist."""
        if not self.artifact_paths:
            raise ConfigurationError("No build artifact path specified")
        for path in self.artifact_paths:
            ArtifactType.from_path(path)
            if not os.path.exists(path):
                raise ConfigurationError(f"Build artifact does not exist: {path!r}")
        if self.signature_type is SignatureType.KEYSTORE:
            if not self.keystore_url:
                raise ConfigurationError("No keystore URL specified")
            if not self.keystore_password:
                raise ConfigurationError("No keystore password specified")
            if not self.keystore_alias:
                raise ConfigurationError("No keystore alias specified")
        elif self.signature_type is SignatureType.CERTIFICATE:
            for name, path in (("private key", self.private_key_path),
                               ("certificate", self.certificate_path)):
                if not path:
                    raise ConfigurationError(f"No {name} path specified")
                if not os.path.exists(path):
                    raise ConfigurationError(f"The {name} does not exist: {path!r}")
        elif self.signature_type is SignatureType.PKCS11:
            if not self.pkcs11_provider_arg:
                raise ConfigurationError("No PKCS#11 provider arg specified")

    def printable(self) -> List[str]:
        """Config as lines for logging, secrets masked."""
        return [
            f" - ArtifactPaths: {self.artifact_paths}",
            f" - SignatureType: {self.signature_type.value}",
            f" - KeystoreURL: {secure_input(self.keystore_url or '')}",
            f" - KeystorePassword: {secure_input(self.keystore_password or '')}",
            f" - KeystoreAlias: {self.keystore_alias or ''}",
            f" - PrivateKeyPassword: {secure_input(self.private_key_password or '')}",
            f" - CertificatePath: {self.certificate_path or ''}",
            f" - PrivateKeyPath: {self.private_key_path or ''}",
            f" - PKCS11ProviderArg: {self.pkcs11_provider_arg or ''}",
            f" - PageAlign: {self.page_align.value}",
            f" - SignerScheme: {self.signer_scheme.value}",
            f" - SignerTool: {self.signer_tool.value}",
            f" - DebuggablePermitted: {str(self.debuggable_permitted).lower()}",
            f" - OutputName: {self.output_name or ''}",
        ]


@dataclass(frozen=True)
class AndroidTools:
    """Android SDK & JDK tools."""
    aapt: str
    zipalign: str
    apksigner: Optional[str]
    keytool: Optional[str]
    jarsigner: Optional[str]

    @classmethod
    def load(_cls, cfg: Optional[Config] = None) -> AndroidTools:
        """Create from get_build_tools_dir() and get_java()."""
        log = logging.getLogger(__name__)
        if cfg and cfg.build_tools_dir:
            build_tools = Path(cfg.build_tools_dir)
        else:
            build_tools = get_build_tools_dir()
        log.debug("build-tools: %s", build_tools)
        aapt, zipalign = (get_build_tool(build_tools, t) for t in ("aapt", "zipalign"))
        try:
            apksigner: Optional[str] = get_build_tool(build_tools, "apksigner")
        except ConfigurationError:
            log.debug("apksigner not found in %s", build_tools)
            apksigner = None
        keytool, jarsigner = get_java(java_home=cfg.java_home if cfg else None)
        return AndroidTools(aapt=aapt, zipalign=zipalign, apksigner=apksigner,
                            keytool=keytool, jarsigner=jarsigner)


def pretty_basename(path: Any) -> str:
    r"""
    Get file name without extension and without a trailing "-unsigned".

    >>> pretty_basename("out/app-unsigned.apk")
    'app'
    >>> pretty_basename("app-signed.apk")
    'app-signed'
    >>> pretty_basename("app-release.aab")
    'app-release'
    >>> pretty_basename("app-unsigned-unsigned.apk")
    'app-unsigned'

    """
    stem = Path(path).stem
    return stem[:-len("-unsigned")] if stem.endswith("-unsigned") else stem


def split_artifact_paths(value: str) -> List[str]:
    r"""
    Split artifact paths separated by | or newlines.

    >>> split_artifact_paths("a.apk|b.aab\n c.apk \n")
    ['a.apk', 'b.aab', 'c.apk']
    >>> split_artifact_paths("")
    []

    """
    return [p.strip() for line in value.splitlines() for p in line.split("|") if p.strip()]


def secure_input(value: str) -> str:
    r"""
    Mask secret for logging; URLs keep their scheme and a few characters.

    >>> secure_input("file:///path/to/keystore.jks")
    'file:///pa***jks'
    >>> secure_input("https://example.com/ks.jks")
    'https://exa***jks'
    >>> secure_input("https://www.ex.co/k")
    'https://www.e***k'
    >>> secure_input("http://a.b")
    'http://***'
    >>> secure_input("hunter2")
    '***'
    >>> secure_input("")
    ''

    """
    if not value:
        return ""
    for prefix in ("file://", "http://www.", "https://www.", "http://", "https://"):
        if value.startswith(prefix):
            rest, show = value[len(prefix):], 3
            break
    else:
        prefix, rest, show = "", value, 0
    if len(rest) < 6 or show == 0:
        return f"{prefix}{SECRET_MASK}"
    if show * 4 > len(rest):
        show = 1
    return f"{prefix}{rest[:show]}{SECRET_MASK}{rest[-show:]}"


def redact_args(args: Iterable[str]) -> List[str]:
    r"""
    Replace the value following a password flag with a mask.

    >>> redact_args(["jarsigner", "-storepass", "s3cret", "-keypass", "k3y", "x.apk"])
    ['jarsigner', '-storepass', '***', '-keypass', '***', 'x.apk']
    >>> redact_args(["apksigner", "sign", "--ks-pass", "pass:s3cret", "--key-pass"])
    ['apksigner', 'sign', '--ks-pass', '***', '--key-pass']

    """
    redacted, secret_next = [], False
    for arg in args:
        redacted.append(SECRET_MASK if secret_next else arg)
        secret_next = arg in SECRET_FLAGS
    return redacted


def printable_command(args: Iterable[str]) -> str:
    r"""
    Command as a (redacted) shell-quoted string for logging.

    >>> printable_command(["apksigner", "sign", "--ks-pass", "pass:s3cret", "--in", "my app.apk"])
    "apksigner sign --ks-pass *** --in 'my app.apk'"

    """
    return " ".join(a if a == SECRET_MASK else shlex.quote(a) for a in redact_args(args))


def run_command(*args: str, env: Optional[Dict[str, str]] = None, keepenv: bool = True,
                merged: bool = False, stdin: Optional[str] = None) -> Tuple[str, Optional[str]]:
    r"""
    Run command and capture stdout + stderr.

    >>> run_command("echo", "OK")
    ('OK\n', '')
    >>> run_command("bash", "-c", "echo OK >&2", merged=True)
    ('OK\n', None)
    >>> run_command("cat", stdin="foo")
    ('foo', '')
    >>> try:
    ...     run_command("bash", "-c", "echo oops; exit 2", merged=True)
    ... except subprocess.CalledProcessError as e:
    ...     print(command_output(e))
    oops

    """
    stderr = subprocess.STDOUT if merged else subprocess.PIPE
    kwargs: Dict[str, Any] = {}
    if env is not None:
        kwargs["env"] = {**os.environ, **env} if keepenv else env
    if stdin is not None:
        kwargs["input"] = stdin.encode()
    cmd = subprocess.run(args, check=True, stdout=subprocess.PIPE, stderr=stderr, **kwargs)
    out = cmd.stdout.decode()
    err = cmd.stderr.decode() if not merged else None
    return out, err


def command_output(e: subprocess.CalledProcessError) -> str:
    """Captured (combined) output of a failed command."""
    parts = [p.decode(errors="replace") if isinstance(p, bytes) else p
             for p in (e.stdout, e.stderr) if p]
    return "".join(parts).strip()


def get_build_tools_dir(*, env: Optional[Dict[str, str]] = None) -> Path:
    r"""
    Find latest build-tools directory using $ANDROID_HOME etc.

    >>> import tempfile
    >>> with tempfile.TemporaryDirectory() as tmp:
    ...     for v in ("33.0.2", "34.0.0-rc3", "34.0.0", "35.0.0-rc1"):
    ...         (Path(tmp) / "build-tools" / v).mkdir(parents=True)
    ...     get_build_tools_dir(env=dict(ANDROID_HOME=tmp)).name
    '35.0.0-rc1'

    """
    env_get = os.environ.get if env is None else env.get
    for k in SDK_ENV:
        if home := env_get(k):
            tools = Path(home) / "build-tools"
            if tools.is_dir():
                vsns = [p.name for p in tools.iterdir() if p.is_dir()]
                if vsns:
                    return tools / max(vsns, key=_vsn)
    raise ConfigurationError("Could not locate Android SDK build-tools (is $ANDROID_HOME set?)")


def get_build_tool(build_tools: Path, name: str) -> str:
    """Get path of build tool (e.g. zipalign); must exist."""
    tool = build_tools / name
    if not tool.exists():
        raise ConfigurationError(f"{name} not found at: {str(tool)!r}")
    return str(tool)


def get_java(*, java_home: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
    """Find keytool and jarsigner using $JAVA_HOME/$PATH."""
    keytool = jarsigner = None
    if not java_home:
        java_home = os.environ.get("JAVA_HOME")
    if java_home:
        keytool = os.path.join(java_home, "bin", "keytool")
        jarsigner = os.path.join(java_home, "bin", "jarsigner")
    if not (keytool and os.path.exists(keytool)):
        keytool = shutil.which("keytool")
    if not (jarsigner and os.path.exists(jarsigner)):
        jarsigner = shutil.which("jarsigner")
    return keytool, jarsigner


def _vsn(v: str) -> Tuple[int, ...]:
    r"""
    >>> vs = "30.0.3 34.0.0 33.0.0-rc2 35.0.0-rc1 33.0.0".split()
    >>> for v in sorted(vs, key=_vsn, reverse=True):
    ...     (_vsn(v), v)
    ((35, 0, 0, 0, 1), '35.0.0-rc1')
    ((34, 0, 0, 1, 0), '34.0.0')
    ((33, 0, 0, 1, 0), '33.0.0')
    ((33, 0, 0, 0, 2), '33.0.0-rc2')
    ((30, 0, 3, 1, 0), '30.0.3')
    """
    if "-rc" in v:
        v = v.replace("-rc", ".0.", 1)
    else:
        v = v + ".1.0"
    return tuple(int(x) if x.isdigit() else -1 for x in v.split("."))


def parse_config_yaml(config_file: Path) -> Dict[str, Any]:
    r"""
    Parse & validate config YAML.

    >>> import tempfile
    >>> with tempfile.TemporaryDirectory() as tmp:
    ...     cfg_file = Path(tmp) / "config.yml"
    ...     _ = cfg_file.write_text("keystore_alias: mykey\npage_align: false\n")
    ...     parse_config_yaml(cfg_file)
    {'keystore_alias': 'mykey', 'page_align': False}

    """
    import jsonschema
    with config_file.open(encoding="utf-8") as fh:
        yaml = YAML(typ="safe")
        data = yaml.load(fh) or {}
    with CONFIG_SCHEMA.open(encoding="utf-8") as fh:
        schema = json.load(fh)
    try:
        jsonschema.validate(data, schema)
    except jsonschema.ValidationError as e:
        raise ConfigurationError(f"Invalid config file {str(config_file)!r}: {e.message}") from e
    return dict(data)


def make_config(file_data: Optional[Dict[str, Any]] = None, **options: Any) -> Config:
    r"""
    Create Config from config file data and options (options that are None
    are unset and do not override the file).

    >>> cfg = make_config(dict(android_app=["a.apk"], page_align=False, keystore_alias="x"),
    ...                   keystore_alias="y", signer_scheme="v2", output_name=None)
    >>> cfg.artifact_paths, cfg.page_align, cfg.keystore_alias, cfg.signer_scheme
    (['a.apk'], <AlignmentMode.STANDARD: 'false'>, 'y', <SignerScheme.V2: 'v2'>)
    >>> make_config(android_app="a.apk|b.aab").artifact_paths
    ['a.apk', 'b.aab']

    """
    data = dict(file_data or {})
    data.update({k: v for k, v in options.items() if v is not None})
    unknown = set(data) - set(CONFIG_KEYS)
    if unknown:
        raise ConfigurationError(f"Unknown config keys: {sorted(unknown)}")
    apps = data.pop("android_app", [])
    paths = split_artifact_paths(apps) if isinstance(apps, str) else [str(p) for p in apps]
    try:
        enums = dict(
            page_align=AlignmentMode(_enum_value(data.pop("page_align", "automatic"))),
            signer_scheme=SignerScheme(data.pop("signer_scheme", "automatic")),
            signer_tool=SignerTool(data.pop("signer_tool", "automatic")),
            signature_type=SignatureType(data.pop("signature_type", "keystore")),
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid config value: {e}") from e
    return Config(artifact_paths=paths, **enums, **data)


def _enum_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def configure_logging(verbose: int = 0, quiet: bool = False) -> None:
    """Configure logging for the CLI."""
    level = logging.WARNING if quiet else logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(format="%(levelname)s: %(message)s", level=level, stream=sys.stderr)


def main() -> None:
    """CLI; requires click."""

    import click
    import repro_apk.binres as binres

    from . import pipeline

    choice = dict(case_sensitive=False)

    @click.group(help="""
        apkresign - resign APKs & AABs
    """)
    @click.version_option(__version__)
    @click.option("-v", "--verbose", count=True, help="Increase verbosity.")
    @click.option("-q", "--quiet", is_flag=True, help="Only log warnings & errors.")
    def cli(verbose: int, quiet: bool) -> None:
        configure_logging(verbose, quiet)

    @cli.command(help="""
        unsign, sign, verify & zipalign APK(s) and/or AAB(s)
    """)
    @click.option("--config", "config_file", envvar="APKRESIGN_CONFIG",
                  type=click.Path(exists=True, dir_okay=False, path_type=Path),
                  help="YAML config file.")
    @click.option("--android-app", envvar="android_app",
                  help="Artifact path(s), separated by | or newlines.")
    @click.option("--keystore-url", envvar="keystore_url",
                  help="Keystore path, file:// or http(s):// URL.")
    @click.option("--keystore-password", envvar="keystore_password")
    @click.option("--keystore-alias", envvar="keystore_alias")
    @click.option("--private-key-password", envvar="private_key_password")
    @click.option("--signature-type", envvar="signature_type",
                  type=click.Choice([t.value for t in SignatureType], **choice))
    @click.option("--certificate-path", envvar="certificate_path")
    @click.option("--private-key-path", envvar="private_key_path")
    @click.option("--pkcs11-provider-arg", envvar="pkcs11_provider_arg")
    @click.option("--page-align", envvar="page_align",
                  type=click.Choice([m.value for m in AlignmentMode], **choice))
    @click.option("--signer-scheme", envvar="signer_scheme",
                  type=click.Choice([s.value for s in SignerScheme], **choice))
    @click.option("--signer-tool", envvar="signer_tool",
                  type=click.Choice([t.value for t in SignerTool], **choice))
    @click.option("--debuggable-permitted", envvar="debuggable_permitted", type=click.BOOL)
    @click.option("--output-name", envvar="output_name",
                  help="Output file name (without extension).")
    @click.option("--work-dir", envvar="APKRESIGN_WORK_DIR")
    @click.option("--java-home", envvar="JAVA_HOME")
    @click.option("--build-tools-dir", envvar="APKRESIGN_BUILD_TOOLS_DIR")
    @click.argument("artifacts", nargs=-1, type=click.Path(dir_okay=False))
    def resign(config_file: Optional[Path], artifacts: Tuple[str, ...], **kwargs: Any) -> None:
        if artifacts:
            kwargs["android_app"] = "\n".join(artifacts)
        for k in ("page_align", "signer_scheme", "signer_tool", "signature_type"):
            if kwargs[k] is not None:
                kwargs[k] = kwargs[k].lower()
        file_data = parse_config_yaml(config_file) if config_file else None
        pipeline.do_resign(make_config(file_data, **kwargs))

    @cli.command(help="""
        print keystore signature algorithm
    """)
    @click.option("--keystore-url", envvar="keystore_url", required=True)
    @click.option("--keystore-password", envvar="keystore_password", required=True)
    @click.option("--keystore-alias", envvar="keystore_alias", required=True)
    @click.option("--java-home", envvar="JAVA_HOME")
    def sigalg(*args: Any, **kwargs: Any) -> None:
        pipeline.do_sigalg(*args, **kwargs)

    @cli.command(help="""
        show signing files & alignment of APK/AAB
    """)
    @click.option("--page-align", envvar="page_align", default="automatic",
                  type=click.Choice([m.value for m in AlignmentMode], **choice))
    @click.argument("artifact", type=click.Path(exists=True, dir_okay=False))
    def info(artifact: str, page_align: str) -> None:
        pipeline.do_info(artifact, AlignmentMode(page_align.lower()))

    try:
        cli(prog_name=NAME)
    except (Error, binres.Error) as e:
        print(f"Error: {e}.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
