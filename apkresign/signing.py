#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""
Signing with apksigner or jarsigner.

A SignatureConfiguration holds exactly one of the key material variants
(KeystoreSignature, CertificateSignature, PKCS11Signature); each variant
knows the arguments it needs for either signing back-end.
"""

from __future__ import annotations

import logging
import subprocess

from pathlib import Path
from typing import List, Optional, Tuple, Union

from pydantic.dataclasses import dataclass

import apkresign

from apkresign import (ConfigurationError, InvalidConfigurationError, SignatureType,
                       SignError, SignerScheme, SignerTool, VerificationError)
from apkresign.keystore import KeystoreDescriptor

JARSIGNER_SIGFILE = "CERT"
PKCS11_PROVIDER_CLASS = "sun.security.pkcs11.SunPKCS11"
PKCS11_KEYSTORE_TYPE = "PKCS11"
PKCS11_KEYSTORE = "NONE"

SIGNED_MARKER = "jar signed."
VERIFIED_MARKERS = {SignerTool.APKSIGNER: "Verifies", SignerTool.JARSIGNER: "jar verified."}


@dataclass(frozen=True)
class KeystoreSignature:
    """Sign with a key from a (JKS/PKCS#12) keystore."""
    keystore: KeystoreDescriptor

    def apksigner_args(self) -> List[str]:
        r"""
        >>> ks = KeystoreDescriptor("ks.jks", "s3cret", "mykey", "SHA256withRSA")
        >>> KeystoreSignature(ks).apksigner_args()
        ['--ks', 'ks.jks', '--ks-pass', 'pass:s3cret', '--ks-key-alias', 'mykey']

        """
        ks = self.keystore
        args = ["--ks", ks.path, "--ks-pass", f"pass:{ks.password}", "--ks-key-alias", ks.alias]
        if ks.key_password:
            args.extend(["--key-pass", f"pass:{ks.key_password}"])
        return args

    def jarsigner_args(self) -> Tuple[List[str], str]:
        r"""
        >>> ks = KeystoreDescriptor("ks.jks", "s3cret", "mykey", "MD5withRSA", "k3y")
        >>> KeystoreSignature(ks).jarsigner_args()
        (['-sigalg', 'SHA1withRSA', '-digestalg', 'SHA1', '-keystore', 'ks.jks', '-storepass', 's3cret', '-keypass', 'k3y'], 'mykey')

        """
        ks = self.keystore
        sigalg, digestalg = ks.jarsigner_algorithms
        args = ["-sigalg", sigalg, "-digestalg", digestalg,
                "-keystore", ks.path, "-storepass", ks.password]
        if ks.key_password:
            args.extend(["-keypass", ks.key_password])
        return args, ks.alias


@dataclass(frozen=True)
class CertificateSignature:
    """Sign with a private key (PKCS#8) & certificate file."""
    key_path: str
    cert_path: str

    def apksigner_args(self) -> List[str]:
        return ["--key", self.key_path, "--cert", self.cert_path]

    def jarsigner_args(self) -> Tuple[List[str], str]:
        raise ConfigurationError("Signing with a private key & certificate requires apksigner")


@dataclass(frozen=True)
class PKCS11Signature:
    """Sign with a key on a PKCS#11 token."""
    provider_arg: str
    alias: Optional[str] = None
    pin: Optional[str] = None

    def apksigner_args(self) -> List[str]:
        r"""
        >>> PKCS11Signature("pkcs11.cfg").apksigner_args()
        ['--provider-class', 'sun.security.pkcs11.SunPKCS11', '--provider-arg', 'pkcs11.cfg', '--ks', 'NONE', '--ks-type', 'PKCS11']

        """
        args = ["--provider-class", PKCS11_PROVIDER_CLASS, "--provider-arg", self.provider_arg,
                "--ks", PKCS11_KEYSTORE, "--ks-type", PKCS11_KEYSTORE_TYPE]
        if self.pin:
            args.extend(["--ks-pass", f"pass:{self.pin}"])
        if self.alias:
            args.extend(["--ks-key-alias", self.alias])
        return args

    def jarsigner_args(self) -> Tuple[List[str], str]:
        if not self.alias:
            raise ConfigurationError("Signing with a PKCS#11 token using jarsigner requires an alias")
        args = ["-keystore", PKCS11_KEYSTORE, "-storetype", PKCS11_KEYSTORE_TYPE,
                "-providerClass", PKCS11_PROVIDER_CLASS, "-providerArg", self.provider_arg]
        if self.pin:
            args.extend(["-storepass", self.pin])
        return args, self.alias


SignatureVariant = Union[KeystoreSignature, CertificateSignature, PKCS11Signature]


@dataclass(frozen=True)
class SignatureConfiguration:
    """Signature type, the matching key material variant & signing options."""
    signature_type: SignatureType
    signer_scheme: SignerScheme = SignerScheme.AUTOMATIC
    debuggable_permitted: bool = True
    keystore: Optional[KeystoreSignature] = None
    certificate: Optional[CertificateSignature] = None
    pkcs11: Optional[PKCS11Signature] = None

    @property
    def variant(self) -> SignatureVariant:
        """Active variant; must match signature_type."""
        variant: Optional[SignatureVariant]
        if self.signature_type is SignatureType.KEYSTORE:
            variant = self.keystore
        elif self.signature_type is SignatureType.CERTIFICATE:
            variant = self.certificate
        elif self.signature_type is SignatureType.PKCS11:
            variant = self.pkcs11
        else:
            raise InvalidConfigurationError(f"Invalid signature type: {self.signature_type!r}")
        if variant is None:
            raise InvalidConfigurationError(f"Invalid {self.signature_type.value} configuration")
        return variant

    def sign_command(self, tool: SignerTool, signer: str, src: str, dst: str) -> List[str]:
        r"""
        Signing command for tool (at path signer).

        >>> ks = KeystoreDescriptor("ks.jks", "s3cret", "mykey", "SHA256withRSA")
        >>> sc = SignatureConfiguration(SignatureType.KEYSTORE, SignerScheme.V2,
        ...                             keystore=KeystoreSignature(ks))
        >>> apkresign.printable_command(sc.sign_command(SignerTool.APKSIGNER, "apksigner", "in.apk", "out.apk"))
        'apksigner sign --in in.apk --out out.apk --debuggable-apk-permitted true --v2-signing-enabled=true --ks ks.jks --ks-pass *** --ks-key-alias mykey'
        >>> apkresign.printable_command(sc.sign_command(SignerTool.JARSIGNER, "jarsigner", "in.apk", "out.apk"))
        'jarsigner -sigfile CERT -sigalg SHA1withRSA -digestalg SHA1 -keystore ks.jks -storepass *** -signedjar out.apk in.apk mykey'

        """
        variant = self.variant
        if tool is SignerTool.APKSIGNER:
            return [signer, "sign", "--in", src, "--out", dst,
                    "--debuggable-apk-permitted", str(self.debuggable_permitted).lower(),
                    *signer_scheme_args(self.signer_scheme), *variant.apksigner_args()]
        if tool is SignerTool.JARSIGNER:
            args, alias = variant.jarsigner_args()
            return [signer, "-sigfile", JARSIGNER_SIGFILE, *args, "-signedjar", dst, src, alias]
        raise InvalidConfigurationError(f"Invalid signer tool: {tool!r}")


def signer_scheme_args(scheme: SignerScheme) -> List[str]:
    r"""
    apksigner flag enabling the signer scheme (none for automatic).

    >>> signer_scheme_args(SignerScheme.AUTOMATIC)
    []
    >>> signer_scheme_args(SignerScheme.V4)
    ['--v4-signing-enabled=true']

    """
    if scheme is SignerScheme.AUTOMATIC:
        return []
    return [f"--{scheme.value}-signing-enabled=true"]


def verify_command(tool: SignerTool, signer: str, path: str) -> List[str]:
    r"""
    Verification command for tool (at path signer).

    >>> verify_command(SignerTool.JARSIGNER, "jarsigner", "app.aab")
    ['jarsigner', '-verify', '-verbose', '-certs', 'app.aab']
    >>> verify_command(SignerTool.APKSIGNER, "apksigner", "app.apk")
    ['apksigner', 'verify', '--verbose', 'app.apk']

    """
    if tool is SignerTool.APKSIGNER:
        return [signer, "verify", "--verbose", path]
    if tool is SignerTool.JARSIGNER:
        return [signer, "-verify", "-verbose", "-certs", path]
    raise InvalidConfigurationError(f"Invalid signer tool: {tool!r}")


@dataclass(frozen=True)
class SignStage:
    """Sign (and verify) with the selected back-end."""
    signature: SignatureConfiguration
    tool: SignerTool
    signer: str

    def run(self, src: Path, dst: Path) -> None:
        """Sign src to dst, then verify dst."""
        self.sign(src, dst)
        self.verify(dst)

    def sign(self, src: Path, dst: Path) -> None:
        """
        Sign src to dst.

        NB: on failure the error carries the tool output, never the command
        (which contains the passwords).
        """
        log = logging.getLogger(__name__)
        args = self.signature.sign_command(self.tool, self.signer, str(src), str(dst))
        log.info("=> %s", apkresign.printable_command(args))
        try:
            out, _ = apkresign.run_command(*args, merged=True)
        except subprocess.CalledProcessError as e:
            raise SignError(apkresign.command_output(e)) from None
        except FileNotFoundError as e:
            raise SignError(f"Could not run {self.tool.value}: {e}") from e
        log.debug(out.strip())
        if self.tool is SignerTool.JARSIGNER and SIGNED_MARKER not in out:
            raise SignError(out.strip())

    def verify(self, path: Path) -> None:
        """Verify signature of path."""
        log = logging.getLogger(__name__)
        args = verify_command(self.tool, self.signer, str(path))
        log.info("=> %s", apkresign.printable_command(args))
        try:
            out, _ = apkresign.run_command(*args, merged=True)
        except subprocess.CalledProcessError as e:
            raise VerificationError(apkresign.command_output(e)) from None
        except FileNotFoundError as e:
            raise VerificationError(f"Could not run {self.tool.value}: {e}") from e
        log.debug(out.strip())
        if VERIFIED_MARKERS[self.tool] not in out:
            raise VerificationError(out.strip())


# vim: set tw=80 sw=4 sts=4 et fdm=marker :
