#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Keystore access: signature algorithm probing & fetching the keystore."""

from __future__ import annotations

import logging
import os
import subprocess

from dataclasses import field
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

import requests

from pydantic.dataclasses import dataclass

import apkresign

from apkresign import ConfigurationError, KeystoreReadError

SIGALG_MARKER = "Signature algorithm name:"
DOWNGRADED_DIGEST = "SHA1"
DOWNLOAD_TIMEOUT = 300


@dataclass(frozen=True)
class KeystoreDescriptor:
    """
    Keystore & alias, with the signature algorithm read from the keystore.

    NB: use load() to probe the algorithm; it is not probed again.
    """
    path: str
    password: str = field(repr=False)
    alias: str
    signature_algorithm: str
    key_password: Optional[str] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        parse_signature_algorithm(self.signature_algorithm)

    @classmethod
    def load(_cls, keytool: str, path: str, password: str, alias: str,
             key_password: Optional[str] = None) -> KeystoreDescriptor:
        """Create from keystore, using probe_signature_algorithm()."""
        alg = probe_signature_algorithm(keytool, path, password, alias)
        return KeystoreDescriptor(path=path, password=password, alias=alias,
                                  signature_algorithm=alg, key_password=key_password or None)

    @property
    def jarsigner_algorithms(self) -> Tuple[str, str]:
        r"""
        Signature & digest algorithm to use with jarsigner.

        NB: the digest is always SHA1, regardless of the keystore.

        >>> ks = KeystoreDescriptor("ks.jks", "pass", "key", "MD5withRSAandMGF1")
        >>> ks.jarsigner_algorithms
        ('SHA1withRSA', 'SHA1')
        >>> KeystoreDescriptor("ks.jks", "pass", "key", "SHA256withECDSA").jarsigner_algorithms
        ('SHA1withECDSA', 'SHA1')

        """
        _, cipher, _ = parse_signature_algorithm(self.signature_algorithm)
        return f"{DOWNGRADED_DIGEST}with{cipher}", DOWNGRADED_DIGEST


def parse_signature_algorithm(alg: str) -> Tuple[str, str, Optional[str]]:
    r"""
    Split signature algorithm name into digest, cipher & (optional) parameter.

    >>> parse_signature_algorithm("SHA256withRSA")
    ('SHA256', 'RSA', None)
    >>> parse_signature_algorithm("MD5withRSAandMGF1")
    ('MD5', 'RSA', 'MGF1')
    >>> try:
    ...     parse_signature_algorithm("Ed25519")
    ... except KeystoreReadError as e:
    ...     print(e)
    Failed to parse signature algorithm: 'Ed25519'

    """
    parts = alg.split("with")
    if len(parts) != 2 or not all(parts):
        raise KeystoreReadError(f"Failed to parse signature algorithm: {alg!r}")
    cipher, _, param = parts[1].partition("and")
    if not cipher:
        raise KeystoreReadError(f"Failed to parse signature algorithm: {alg!r}")
    return parts[0], cipher, param or None


def find_signature_algorithm(keystore_info: str) -> Optional[str]:
    r"""
    Find signature algorithm name in keytool -list -v output.

    Only the first word after the marker is used; anything else on the line
    is logged as a warning.

    >>> out = '''Alias name: mykey
    ... Certificate fingerprints:
    ...      SHA1: 66:C3:60:5B:B8:0B:B0:2C:AE:C5:54:72:B6:B2:D6:18:99:FB:70:9F
    ...      Signature algorithm name: SHA256withRSA
    ...      Version: 3
    ... '''
    >>> find_signature_algorithm(out)
    'SHA256withRSA'
    >>> find_signature_algorithm("Signature algorithm name: SHA1withRSA (weak)")
    'SHA1withRSA'
    >>> find_signature_algorithm("Alias name: mykey") is None
    True

    """
    log = logging.getLogger(__name__)
    for line in keystore_info.splitlines():
        if SIGALG_MARKER not in line:
            continue
        alg = line.split(SIGALG_MARKER, 1)[1].strip()
        words = alg.split()
        if not words:
            return None
        if len(words) > 1:
            log.warning("Signature algorithm name contains unnecessary postfix: %s", alg)
            log.info("Trimmed signature algorithm name: %s", words[0])
        return words[0]
    return None


def probe_signature_algorithm(keytool: str, path: str, password: str, alias: str) -> str:
    """Get signature algorithm of keystore alias using keytool -list -v."""
    log = logging.getLogger(__name__)
    if not os.path.exists(path):
        raise KeystoreReadError(f"Keystore does not exist at: {path!r}")
    args = (keytool, "-list", "-v", "-keystore", path, "-storepass", password, "-alias", alias,
            "-J-Dfile.encoding=utf-8", "-J-Duser.language=en-US")
    log.debug("=> %s", apkresign.printable_command(args))
    try:
        out, _ = apkresign.run_command(*args, env=apkresign.CLEAN_LANG_ENV, merged=True)
    except subprocess.CalledProcessError as e:
        raise KeystoreReadError(f"Failed to read keystore: {apkresign.command_output(e)}") from None
    except FileNotFoundError as e:
        raise KeystoreReadError(f"Could not run keytool: {e}") from e
    if not out.strip():
        raise KeystoreReadError(f"Failed to read keystore, maybe alias ({alias!r}) or password is not correct")
    alg = find_signature_algorithm(out)
    if not alg:
        raise KeystoreReadError("Failed to find signature algorithm")
    return alg


def fetch_keystore(url: str, work_dir: Path) -> str:
    """
    Get local keystore path; http(s):// URLs are downloaded to work_dir,
    file:// URLs and plain paths are used as is.
    """
    log = logging.getLogger(__name__)
    if urlparse(url).scheme in ("http", "https"):
        path = work_dir / "keystore.jks"
        log.info("Downloading keystore...")
        try:
            with requests.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT) as r:
                r.raise_for_status()
                with path.open("wb") as fh:
                    for chunk in r.iter_content(chunk_size=4096):
                        fh.write(chunk)
        except requests.HTTPError as e:
            raise ConfigurationError(
                f"Failed to download keystore: HTTP {e.response.status_code}") from None
        except requests.RequestException as e:
            raise ConfigurationError(f"Failed to download keystore: {type(e).__name__}") from None
        return str(path)
    if url.startswith("file://"):
        url = url[len("file://"):]
    return os.path.abspath(os.path.expanduser(url))


# vim: set tw=80 sw=4 sts=4 et fdm=marker :
