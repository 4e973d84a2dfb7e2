import os
import shutil
import struct
import subprocess
import zipfile

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

import pytest

import apkresign

KEYTOOL_OUTPUT = """Alias name: mykey
Creation date: Jun 2, 2016
Entry type: PrivateKeyEntry
Certificate chain length: 1
Certificate[1]:
Owner: CN=Test, OU=Mobile Development, O=MyCompany, L=Budapest, ST=Pest, C=HU
Issuer: CN=Test, OU=Mobile Development, O=MyCompany, L=Budapest, ST=Pest, C=HU
Serial number: 5750111
Valid from: Thu Jun 02 19:56:20 CEST 2016 until: Mon May 27 19:56:20 CEST 2041
Certificate fingerprints:
\t MD5:  CA:30:61:CB:AD:70:03:73:C7:FD:91:A4:9C:FB:92:F9
\t SHA1: 66:C3:60:5B:B8:0B:B0:2C:AE:C5:54:72:B6:B2:D6:18:99:FB:70:9F
\t Signature algorithm name: SHA256withRSA
\t Version: 3
"""


ANDROID_NS = "http://schemas.android.com/apk/res/android"
NO_INDEX = 0xFFFFFFFF
TYPE_DYNAMIC_REFERENCE = 0x07
TYPE_BOOLEAN = 0x12

# attribute names first, in resource map order
AXML_STRINGS = ["extractNativeLibs", "label", "android", ANDROID_NS, "manifest", "application"]
AXML_RES_IDS = [0x010104ea, 0x01010001]


def make_zip(path: Path, names: Iterable[str]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name in names:
            zf.writestr(name, b"data")
    return path


def _chunk(chunk_type: int, header: bytes, body: bytes) -> bytes:
    return struct.pack("<HHI", chunk_type, 8 + len(header), 8 + len(header) + len(body)) + header + body


def _string_pool(strings: List[str]) -> bytes:
    offsets, data = [], b""
    for s in strings:
        offsets.append(len(data))
        data += struct.pack("<H", len(s)) + s.encode("utf-16-le") + b"\0\0"
    data += b"\0" * (-len(data) % 4)
    header = struct.pack("<IIIII", len(strings), 0, 0, 28 + 4 * len(strings), 0)
    return _chunk(0x0001, header, struct.pack(f"<{len(offsets)}I", *offsets) + data)


def _node(chunk_type: int, ext: bytes) -> bytes:
    return _chunk(chunk_type, struct.pack("<II", 1, NO_INDEX), ext)


def _elem_start(name: int, attrs: List[Tuple[int, int, int]]) -> bytes:
    ext = struct.pack("<IIHHHHHH", NO_INDEX, name, 20, 20, len(attrs), 0, 0, 0)
    for attr_name, value_type, value in attrs:
        ext += struct.pack("<IIIHBBI", 3, attr_name, NO_INDEX, 8, 0, value_type, value)
    return _node(0x0102, ext)


def make_axml(app_attrs: Dict[str, Tuple[int, int]]) -> bytes:
    """Binary AndroidManifest.xml: <manifest><application .../></manifest>."""
    attrs = [(AXML_STRINGS.index(k), t, v) for k, (t, v) in app_attrs.items()]
    manifest, application = AXML_STRINGS.index("manifest"), AXML_STRINGS.index("application")
    body = b"".join([
        _string_pool(AXML_STRINGS),
        _chunk(0x0180, b"", struct.pack(f"<{len(AXML_RES_IDS)}I", *AXML_RES_IDS)),
        _node(0x0100, struct.pack("<II", 2, 3)),
        _elem_start(manifest, []),
        _elem_start(application, attrs),
        _node(0x0103, struct.pack("<II", NO_INDEX, application)),
        _node(0x0103, struct.pack("<II", NO_INDEX, manifest)),
        _node(0x0101, struct.pack("<II", 2, 3)),
    ])
    return _chunk(0x0003, b"", body)


def make_apk(path: Path, app_attrs: Dict[str, Tuple[int, int]]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("AndroidManifest.xml", make_axml(app_attrs))
        zf.writestr("classes.dex", b"dex")
    return path


class FakeTools:
    """Stand-in for run_command that emulates keytool, aapt, the signers & zipalign."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.outputs: Dict[str, str] = {"keytool": KEYTOOL_OUTPUT}
        self.failures: Dict[str, str] = {}
        self.aligned: Set[Tuple[str, bool]] = set()
        self.all_aligned = False

    def __call__(self, *args: str, env: Optional[Dict[str, str]] = None, keepenv: bool = True,
                 merged: bool = False, stdin: Optional[str] = None):
        self.calls.append(list(args))
        tool = os.path.basename(args[0])
        if tool in self.failures:
            raise subprocess.CalledProcessError(1, args, output=self.failures[tool].encode())
        if tool == "keytool":
            return self.outputs["keytool"], None
        if tool == "aapt":
            return "", None
        if tool == "jarsigner":
            if args[1] == "-verify":
                return self.outputs.get("jarsigner-verify", "s = signature was verified\n\njar verified.\n"), None
            i = args.index("-signedjar")
            shutil.copyfile(args[i + 2], args[i + 1])
            return self.outputs.get("jarsigner-sign", "jar signed.\n"), None
        if tool == "apksigner":
            if args[1] == "verify":
                return self.outputs.get("apksigner-verify", "Verifies\nVerified using v2 scheme: true\n"), None
            shutil.copyfile(args[args.index("--in") + 1], args[args.index("--out") + 1])
            return "", None
        if tool == "zipalign":
            page = "-p" in args
            if "-c" in args:
                if self.all_aligned or (args[-1], page) in self.aligned:
                    return "Verification succesful\n", None
                raise subprocess.CalledProcessError(1, args, output=b"Verification FAILED\n")
            shutil.copyfile(args[-2], args[-1])
            self.aligned.add((args[-1], page))
            return "", None
        if tool == "envman":
            return "", None
        raise AssertionError(f"unexpected command: {args}")

    def tool_calls(self, tool: str) -> List[List[str]]:
        return [c for c in self.calls if os.path.basename(c[0]) == tool]


@pytest.fixture
def fake_tools(monkeypatch: pytest.MonkeyPatch) -> FakeTools:
    fake = FakeTools()
    monkeypatch.setattr(apkresign, "run_command", fake)
    return fake


@pytest.fixture
def android_tools() -> apkresign.AndroidTools:
    return apkresign.AndroidTools(
        aapt="/sdk/build-tools/35.0.0/aapt", zipalign="/sdk/build-tools/35.0.0/zipalign",
        apksigner="/sdk/build-tools/35.0.0/apksigner", keytool="/jdk/bin/keytool",
        jarsigner="/jdk/bin/jarsigner")


@pytest.fixture
def keystore_file(tmp_path: Path) -> Path:
    path = tmp_path / "release.jks"
    path.write_bytes(b"not really a keystore")
    return path
