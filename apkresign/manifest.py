#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: AGPL-3.0-or-later

"""Read extractNativeLibs from the (binary) AndroidManifest.xml of an APK."""

from __future__ import annotations

import struct
import xml.etree.ElementTree as ET
import zipfile

from pathlib import Path
from typing import Dict, Optional

import repro_apk.binres as binres

from apkresign import ManifestParseError

MANIFEST_FILE = "AndroidManifest.xml"
EXTRACT_NATIVE_LIBS = f"{{{binres.SCHEMA_ANDROID}}}extractNativeLibs"
TRUE_VALUES = ("1", "t", "true")

# only these attributes are dereferenced; others are dropped from the tree
DECODED_ATTRS = frozenset([EXTRACT_NATIVE_LIBS])

# what binres may raise on truncated, corrupt or unsupported (dynamic) data
DECODE_ERRORS = (binres.Error, struct.error, ValueError, IndexError, UnicodeDecodeError,
                 NotImplementedError, AssertionError)


def get_extract_native_libs(apkfile: Path) -> bool:
    """Get android:extractNativeLibs of <application>; defaults to False."""
    return extract_native_libs(ET.fromstring(decode_manifest(apkfile)))


def extract_native_libs(manifest: ET.Element) -> bool:
    r"""
    Get android:extractNativeLibs of <application> from manifest element tree.

    >>> ns = 'xmlns:android="http://schemas.android.com/apk/res/android"'
    >>> extract_native_libs(ET.fromstring(f'<manifest {ns}><application android:extractNativeLibs="true"/></manifest>'))
    True
    >>> extract_native_libs(ET.fromstring(f'<manifest {ns}><application android:extractNativeLibs="false"/></manifest>'))
    False
    >>> extract_native_libs(ET.fromstring(f'<manifest {ns}><application android:label="x"/></manifest>'))
    False
    >>> extract_native_libs(ET.fromstring('<manifest/>'))
    False

    """
    app = manifest.find("application")
    if app is None:
        return False
    return app.get(EXTRACT_NATIVE_LIBS, "false").strip().lower() in TRUE_VALUES


def decode_manifest(apkfile: Path) -> bytes:
    """
    Decode AndroidManifest.xml (resolving resources.arsc references) to XML;
    only the attributes in DECODED_ATTRS are kept.

    Raises ManifestParseError with cause "zip", "resources" or "manifest".
    """
    try:
        zf = zipfile.ZipFile(apkfile)
    except (OSError, zipfile.BadZipFile) as e:
        raise ManifestParseError(f"failed to unzip the APK: {e}", "zip") from e
    with zf:
        infos = {i.orig_filename: i for i in zf.infolist()}
        try:
            resources = _read_resources(zf, infos)
        except (zipfile.BadZipFile, OSError, *DECODE_ERRORS) as e:
            raise ManifestParseError(f"failed to parse resources: {e}", "resources") from e
        if MANIFEST_FILE not in infos:
            raise ManifestParseError(f"failed to parse {MANIFEST_FILE}: entry not found", "manifest")
        try:
            data = _axml_to_xml(zf.read(infos[MANIFEST_FILE]), resources)
            ET.fromstring(data)
        except (zipfile.BadZipFile, OSError, ET.ParseError, *DECODE_ERRORS) as e:
            raise ManifestParseError(f"failed to parse {MANIFEST_FILE}: {e}", "manifest") from e
    return data


def _read_resources(zf: zipfile.ZipFile, infos: Dict[str, zipfile.ZipInfo]) \
        -> Optional[binres.ResourceTableChunk]:
    if binres.ARSC_FILE not in infos:
        return None
    chunk = binres.read_chunk(zf.read(infos[binres.ARSC_FILE]))[0]
    if not isinstance(chunk, binres.ResourceTableChunk):
        raise ValueError("Unable to parse ARSC")
    return chunk


def _axml_to_xml(axml: bytes, resources: Optional[binres.ResourceTableChunk]) -> bytes:
    axml_chunk = binres.read_chunk(axml)[0]
    if not isinstance(axml_chunk, binres.XMLChunk):
        raise ValueError("Unable to parse AXML")
    tb, depth, seen = ET.TreeBuilder(), 0, False
    for c in axml_chunk.children:
        if isinstance(c, binres.XMLElemStartChunk):
            if seen and not depth:
                raise ValueError("Multiple root elements")
            attrs = {
                k: str(binres.brv_str_deref(a.typed_value, a.raw_value, resources=resources))
                for k, a in c.attrs_as_dict.items() if k in DECODED_ATTRS
            }
            tb.start(c.name, attrs)
            depth, seen = depth + 1, True
        elif isinstance(c, binres.XMLElemEndChunk):
            if not depth:
                raise ValueError("End tag with empty stack")
            tb.end(c.name)
            depth -= 1
    if depth or not seen:
        raise ValueError("Missing or unterminated root element")
    return ET.tostring(tb.close())


# vim: set tw=80 sw=4 sts=4 et fdm=marker :
