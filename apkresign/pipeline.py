#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Resign pipeline: unsign, sign, verify & zipalign each artifact in turn.

Artifacts are processed sequentially in input order; the first failure
aborts the whole run and nothing is exported.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import tempfile

from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set, Tuple

import apkresign
import apkresign.manifest
import apkresign.zipalign as zipalign

from apkresign import (AlignmentMode, AndroidTools, Artifact, ArtifactType, Config,
                       ConfigurationError, PipelineResult, SignatureType, SignerScheme,
                       SignerTool)
from apkresign.archive import UnsignStage, classify_signing_files, is_signed, list_entries
from apkresign.keystore import KeystoreDescriptor, fetch_keystore
from apkresign.signing import (CertificateSignature, KeystoreSignature, PKCS11Signature,
                               SignatureConfiguration, SignStage)

OUTPUT_SUFFIX = "-bitrise-signed"


def select_signer_tool(requested: SignerTool, artifact_type: ArtifactType,
                       signature_type: SignatureType, tools: AndroidTools) -> Tuple[SignerTool, str]:
    """
    Select signing back-end & its path.

    AABs can only be signed with jarsigner; for APKs, automatic prefers
    apksigner when available.
    """
    if artifact_type is ArtifactType.AAB:
        if requested is SignerTool.APKSIGNER:
            raise ConfigurationError("Signing an AAB with apksigner is not supported, use jarsigner")
        tool = SignerTool.JARSIGNER
    elif requested is SignerTool.AUTOMATIC:
        tool = SignerTool.APKSIGNER if tools.apksigner else SignerTool.JARSIGNER
    else:
        tool = requested
    if tool is SignerTool.JARSIGNER and signature_type is SignatureType.CERTIFICATE:
        raise ConfigurationError("Signing with a private key & certificate requires apksigner")
    path = tools.apksigner if tool is SignerTool.APKSIGNER else tools.jarsigner
    if not path:
        raise ConfigurationError(f"Could not locate {tool.value}")
    return tool, path


def output_path(artifact: Artifact, *, output_name: Optional[str] = None,
                index: int = 0, total: int = 1) -> Path:
    r"""
    Output path (next to the input artifact).

    >>> str(output_path(Artifact.from_path("out/app-unsigned.apk")))
    'out/app-bitrise-signed.apk'
    >>> str(output_path(Artifact.from_path("out/app.aab"), output_name="release"))
    'out/release.aab'
    >>> str(output_path(Artifact.from_path("out/app.apk"), output_name="release", index=1, total=3))
    'out/release-2.apk'

    """
    ext = artifact.type.value
    if output_name:
        name = f"{output_name}-{index + 1}{ext}" if total > 1 else f"{output_name}{ext}"
    else:
        name = f"{apkresign.pretty_basename(artifact.path)}{OUTPUT_SUFFIX}{ext}"
    return artifact.path.parent / name


def output_paths(artifacts: Sequence[Artifact], *, output_name: Optional[str] = None) -> List[Path]:
    """
    Output paths for all artifacts; an output may neither overwrite an input
    nor another output.
    """
    inputs = {a.path.resolve() for a in artifacts}
    outputs: List[Path] = []
    seen: Set[Path] = set()
    for i, artifact in enumerate(artifacts):
        dst = output_path(artifact, output_name=output_name, index=i, total=len(artifacts))
        key = dst.resolve()
        if key in inputs:
            raise ConfigurationError(f"Output path would overwrite build artifact: {str(dst)!r}")
        if key in seen:
            raise ConfigurationError(f"Duplicate output path: {str(dst)!r}")
        seen.add(key)
        outputs.append(dst)
    return outputs


def build_signature_configuration(cfg: Config, tools: AndroidTools,
                                  work_dir: Path) -> SignatureConfiguration:
    """Create SignatureConfiguration from Config (probing the keystore once)."""
    log = logging.getLogger(__name__)
    variant: Dict[str, object]
    if cfg.signature_type is SignatureType.KEYSTORE:
        if not tools.keytool:
            raise ConfigurationError("Could not locate keytool")
        assert cfg.keystore_url and cfg.keystore_password and cfg.keystore_alias
        keystore_path = fetch_keystore(cfg.keystore_url, work_dir)
        log.info("Using keystore at: %s", keystore_path)
        keystore = KeystoreDescriptor.load(tools.keytool, keystore_path, cfg.keystore_password,
                                           cfg.keystore_alias, cfg.private_key_password)
        log.info("Signature algorithm: %s", keystore.signature_algorithm)
        variant = dict(keystore=KeystoreSignature(keystore))
    elif cfg.signature_type is SignatureType.CERTIFICATE:
        assert cfg.private_key_path and cfg.certificate_path
        variant = dict(certificate=CertificateSignature(key_path=cfg.private_key_path,
                                                        cert_path=cfg.certificate_path))
    else:
        assert cfg.pkcs11_provider_arg
        variant = dict(pkcs11=PKCS11Signature(provider_arg=cfg.pkcs11_provider_arg,
                                              alias=cfg.keystore_alias, pin=cfg.keystore_password))
    return SignatureConfiguration(signature_type=cfg.signature_type, signer_scheme=cfg.signer_scheme,
                                  debuggable_permitted=cfg.debuggable_permitted, **variant)


class ResignPipeline:
    """Unsign, sign, verify & zipalign artifacts, one at a time."""

    def __init__(self, cfg: Config, tools: AndroidTools, signature: SignatureConfiguration,
                 work_dir: Path) -> None:
        self.cfg = cfg
        self.tools = tools
        self.signature = signature
        self.work_dir = work_dir

    def run(self, paths: Sequence[str]) -> PipelineResult:
        """Resign all artifacts; the first failure aborts the run."""
        artifacts = [Artifact.from_path(p) for p in paths]
        outputs = output_paths(artifacts, output_name=self.cfg.output_name)
        result = PipelineResult()
        for i, (artifact, dst) in enumerate(zip(artifacts, outputs)):
            result.add(artifact.type, self.resign(artifact, dst, index=i))
        return result

    def resign(self, artifact: Artifact, dst: Path, *, index: int = 0) -> Path:
        """Resign one artifact to dst; returns dst."""
        log = logging.getLogger(__name__)
        tool, signer = select_signer_tool(self.cfg.signer_tool, artifact.type,
                                          self.signature.signature_type, self.tools)
        if tool is SignerTool.JARSIGNER and self.signature.signer_scheme is not SignerScheme.AUTOMATIC:
            log.warning("jarsigner only creates v1 signatures, ignoring signer scheme %s",
                        self.signature.signer_scheme.value)
        prefix = f"{index}-{apkresign.pretty_basename(artifact.path)}"
        ext = artifact.type.value
        unsigned = self.work_dir / f"{prefix}-unsigned{ext}"
        unaligned = self.work_dir / f"{prefix}-unaligned{ext}"
        log.info("Resigning %s (%s, using %s)", artifact.path, artifact.type.name, tool.value)
        try:
            shutil.copyfile(artifact.path, unsigned)
        except OSError as e:
            raise ConfigurationError(f"Failed to copy build artifact: {e}") from e
        log.info("Unsign build artifact if signed")
        UnsignStage(self.tools.aapt).run(unsigned)
        log.info("Sign build artifact")
        SignStage(self.signature, tool, signer).run(unsigned, unaligned)
        log.info("Zipalign build artifact")
        page_align = zipalign.resolve_page_align(self.cfg.page_align, Artifact(unaligned, artifact.type))
        log.info("Page alignment: %s", "yes" if page_align else "no")
        zipalign.zipalign_artifact(zipalign.ZipalignConfig(self.tools.zipalign, page_align),
                                   unaligned, dst)
        log.info("Signed %s created at: %s", artifact.type.name, dst)
        return dst


def export_outputs(env: Dict[str, str]) -> None:
    """Export output values with envman (if available), else print them."""
    log = logging.getLogger(__name__)
    envman = shutil.which("envman")
    for k, v in env.items():
        if not envman:
            print(f"{k}={v}")
            continue
        try:
            apkresign.run_command(envman, "add", "--key", k, stdin=v, merged=True)
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            log.warning("Failed to export %s: %s", k, e)


def do_resign(cfg: Config) -> PipelineResult:
    """Resign artifacts & export the output paths."""
    log = logging.getLogger(__name__)
    cfg.validate()
    log.info("Configs:")
    for line in cfg.printable():
        log.info(line)
    if cfg.work_dir:
        work_dir = Path(cfg.work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
    else:
        work_dir = Path(tempfile.mkdtemp(prefix="apkresign-"))
    log.debug("Work dir: %s", work_dir)
    tools = AndroidTools.load(cfg)
    signature = build_signature_configuration(cfg, tools, work_dir)
    result = ResignPipeline(cfg, tools, signature, work_dir).run(cfg.artifact_paths)
    export_outputs(result.env())
    return result


def do_sigalg(keystore_url: str, keystore_password: str, keystore_alias: str,
              java_home: Optional[str] = None) -> None:
    """Print keystore signature algorithm (and what jarsigner will use)."""
    keytool, _ = apkresign.get_java(java_home=java_home)
    if not keytool:
        raise ConfigurationError("Could not locate keytool")
    with tempfile.TemporaryDirectory(prefix="apkresign-") as tmpdir:
        path = fetch_keystore(keystore_url, Path(tmpdir))
        keystore = KeystoreDescriptor.load(keytool, path, keystore_password, keystore_alias)
    sigalg, digestalg = keystore.jarsigner_algorithms
    print(f"signature algorithm: {keystore.signature_algorithm}")
    print(f"jarsigner: -sigalg {sigalg} -digestalg {digestalg}")


def do_info(path: str, page_align: AlignmentMode = AlignmentMode.AUTO) -> None:
    """Print signing files, whether signed, and the alignment decision."""
    artifact = Artifact.from_path(path)
    entries = list_entries(artifact.path)
    print(f"type: {artifact.type.name}")
    print(f"signed: {'yes' if is_signed(entries) else 'no'}")
    print("signing files:")
    for f in classify_signing_files(entries):
        print(f"  {f}")
    if artifact.type is ArtifactType.APK:
        try:
            extract = apkresign.manifest.get_extract_native_libs(artifact.path)
            print(f"extractNativeLibs: {'true' if extract else 'false'}")
        except apkresign.ManifestParseError as e:
            print(f"extractNativeLibs: unknown ({e.cause}: {e})")
    page = zipalign.resolve_page_align(page_align, artifact)
    print(f"page align: {'yes' if page else 'no'}")


# vim: set tw=80 sw=4 sts=4 et fdm=marker :
