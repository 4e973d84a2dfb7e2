#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Inspecting & removing (v1) signature files in APKs/AABs."""

from __future__ import annotations

import logging
import os
import subprocess
import zipfile

from pathlib import Path
from typing import Iterable, List

from pydantic.dataclasses import dataclass

import apkresign

from apkresign import UnsignError

META_INF = "META-INF/"
SIGNING_FILE_EXTS = (".mf", ".rsa", ".dsa", ".ec", ".sf")
SIGNATURE_BLOCK_EXTS = (".rsa", ".dsa")


def list_entries(path: Path) -> List[str]:
    """List ZIP entries (in order); read from the file on every call."""
    try:
        with zipfile.ZipFile(path) as zf:
            return [i.orig_filename for i in zf.infolist()]
    except (OSError, zipfile.BadZipFile) as e:
        raise UnsignError(f"Failed to list files in {str(path)!r}: {e}") from e


def filter_meta_files(entries: Iterable[str]) -> List[str]:
    r"""
    Entries in META-INF/.

    >>> filter_meta_files(["META-INF/MANIFEST.MF", "AndroidManifest.xml", "META-INF/CERT.RSA"])
    ['META-INF/MANIFEST.MF', 'META-INF/CERT.RSA']

    """
    return [e for e in entries if e.startswith(META_INF)]


def classify_signing_files(entries: Iterable[str]) -> List[str]:
    r"""
    Signing files: entries in META-INF/ with a (case-insensitive) signing
    file extension.

    >>> classify_signing_files(["META-INF/MANIFEST.MF", "res/x.rsa", "META-INF/CERT.SF",
    ...                         "META-INF/services/foo", "META-INF/KEY.ec", "META-INF/CERT.RSA"])
    ['META-INF/MANIFEST.MF', 'META-INF/CERT.SF', 'META-INF/KEY.ec', 'META-INF/CERT.RSA']

    """
    return [e for e in filter_meta_files(entries) if _ext(e) in SIGNING_FILE_EXTS]


def is_signed(entries: Iterable[str]) -> bool:
    r"""
    Whether there is a signature block file (.RSA or .DSA) in META-INF/.

    NB: .MF, .SF & .EC files alone are not considered a signature, even though
    classify_signing_files() includes them.

    >>> is_signed(["META-INF/MANIFEST.MF", "META-INF/CERT.SF"])
    False
    >>> is_signed(["classes.dex", "META-INF/CERT.dsa"])
    True
    >>> is_signed(["CERT.RSA"])
    False

    """
    return any(_ext(e) in SIGNATURE_BLOCK_EXTS for e in filter_meta_files(entries))


def _ext(filename: str) -> str:
    return os.path.splitext(filename)[1].lower()


@dataclass(frozen=True)
class UnsignStage:
    """Remove signing files using aapt."""
    aapt: str

    def run(self, path: Path) -> List[str]:
        """Remove signing files from path (in place) if signed; returns removed files."""
        log = logging.getLogger(__name__)
        entries = list_entries(path)
        if not is_signed(entries):
            log.info("Build artifact is not signed")
            return []
        files = classify_signing_files(entries)
        args = [self.aapt, "remove", str(path), *files]
        log.info("=> %s", apkresign.printable_command(args))
        try:
            apkresign.run_command(*args, merged=True)
        except subprocess.CalledProcessError as e:
            raise UnsignError(apkresign.command_output(e)) from e
        except FileNotFoundError as e:
            raise UnsignError(f"Could not run aapt: {e}") from e
        log.info("Removed %d signing file(s)", len(files))
        return files


# vim: set tw=80 sw=4 sts=4 et fdm=marker :
