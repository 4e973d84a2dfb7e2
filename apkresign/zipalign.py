#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Deciding on (page) alignment & zipaligning only when needed."""

from __future__ import annotations

import logging
import shutil
import subprocess

from pathlib import Path
from typing import List

from pydantic.dataclasses import dataclass

import apkresign
import apkresign.manifest

from apkresign import AlignmentError, AlignmentMode, Artifact, ArtifactType, ManifestParseError

ALIGNMENT = "4"


def resolve_page_align(mode: AlignmentMode, artifact: Artifact) -> bool:
    r"""
    Whether to page-align (uncompressed .so files) in addition to 4-byte alignment.

    Forced modes win; AABs are never page-aligned automatically; APKs are
    page-aligned unless the manifest sets extractNativeLibs="true" (or cannot
    be read, in which case we page-align to be safe).

    >>> resolve_page_align(AlignmentMode.PAGE, Artifact.from_path("app.aab"))
    True
    >>> resolve_page_align(AlignmentMode.STANDARD, Artifact.from_path("app.apk"))
    False
    >>> resolve_page_align(AlignmentMode.AUTO, Artifact.from_path("app.aab"))
    False

    """
    if mode is AlignmentMode.PAGE:
        return True
    if mode is AlignmentMode.STANDARD:
        return False
    if artifact.type is ArtifactType.AAB:
        return False
    try:
        extract_native_libs = apkresign.manifest.get_extract_native_libs(artifact.path)
    except ManifestParseError as e:
        log = logging.getLogger(__name__)
        log.warning("Failed to parse APK manifest to read extractNativeLibs attribute: %s", e)
        return True
    return not extract_native_libs


@dataclass(frozen=True)
class ZipalignConfig:
    """zipalign with or without page alignment."""
    zipalign: str
    page_align: bool

    def args(self, *args: str) -> List[str]:
        r"""
        >>> ZipalignConfig("zipalign", True).args("-c", ALIGNMENT, "app.apk")
        ['zipalign', '-p', '-c', '4', 'app.apk']
        >>> ZipalignConfig("zipalign", False).args("-f", ALIGNMENT, "in.apk", "out.apk")
        ['zipalign', '-f', '4', 'in.apk', 'out.apk']

        """
        return [self.zipalign, *(["-p"] if self.page_align else []), *args]

    def check_alignment(self, path: Path) -> bool:
        """Whether path is already aligned; a non-zero exit means it is not."""
        log = logging.getLogger(__name__)
        args = self.args("-c", ALIGNMENT, str(path))
        log.info("=> %s", apkresign.printable_command(args))
        try:
            apkresign.run_command(*args, merged=True)
        except subprocess.CalledProcessError as e:
            log.debug(apkresign.command_output(e))
            return False
        except FileNotFoundError as e:
            raise AlignmentError(f"Could not run zipalign: {e}") from e
        log.info("Artifact alignment confirmed.")
        return True

    def align_artifact(self, src: Path, dst: Path) -> None:
        """Zipalign src to dst (overwriting dst)."""
        log = logging.getLogger(__name__)
        args = self.args("-f", ALIGNMENT, str(src), str(dst))
        log.info("=> %s", apkresign.printable_command(args))
        try:
            apkresign.run_command(*args, merged=True)
        except subprocess.CalledProcessError as e:
            raise AlignmentError(f"Failed to zipalign: {apkresign.command_output(e)}") from e
        except FileNotFoundError as e:
            raise AlignmentError(f"Could not run zipalign: {e}") from e


def zipalign_artifact(cfg: ZipalignConfig, src: Path, dst: Path) -> None:
    """Copy src to dst if already aligned, zipalign otherwise."""
    if cfg.check_alignment(src):
        try:
            shutil.copyfile(src, dst)
        except OSError as e:
            raise AlignmentError(f"Failed to copy build artifact: {e}") from e
        return
    cfg.align_artifact(src, dst)


# vim: set tw=80 sw=4 sts=4 et fdm=marker :
