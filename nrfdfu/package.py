"""Reading init and firmware images out of DFU zip packages."""

from __future__ import annotations

import json
import os
import zipfile
from typing import Any, Union

PathLike = Union[str, "os.PathLike[str]"]


class PackageError(Exception):
    """The DFU package is malformed or lacks the requested component."""


def extract_application(path: PathLike) -> tuple[bytes, bytes]:
    """Return the init packet and firmware image of the application."""
    return extract(path, "application")


def extract_bootloader(path: PathLike) -> tuple[bytes, bytes]:
    """Return the init packet and firmware image of the bootloader."""
    return extract(path, "bootloader")


def extract_softdevice(path: PathLike) -> tuple[bytes, bytes]:
    """Return the init packet and firmware image of the SoftDevice."""
    return extract(path, "softdevice")


def extract_softdevice_bootloader(path: PathLike) -> tuple[bytes, bytes]:
    """Return the init packet and firmware image of the combined SoftDevice and bootloader."""
    return extract(path, "softdevice_bootloader")


def extract(path: PathLike, component: str) -> tuple[bytes, bytes]:
    """Return ``(init_packet, firmware)`` for ``component`` from the package at ``path``."""
    try:
        archive = zipfile.ZipFile(path)
    except zipfile.BadZipFile as exc:
        raise PackageError(f"DFU package: not a valid zip archive ({exc})") from exc

    with archive:
        try:
            raw = archive.read("manifest.json")
        except KeyError:
            raise PackageError("DFU package: missing manifest.json") from None
        try:
            manifest = json.loads(raw)
        except ValueError as exc:
            raise PackageError("DFU package: manifest.json is not valid JSON") from exc

        dat = _extract_part(archive, manifest, component, "dat_file")
        firmware = _extract_part(archive, manifest, component, "bin_file")
    return dat, firmware


def _extract_part(archive: zipfile.ZipFile, manifest: Any, component: str, part: str) -> bytes:
    section = manifest.get("manifest") if isinstance(manifest, dict) else None
    entry = section.get(component) if isinstance(section, dict) else None
    if not isinstance(entry, dict):
        raise PackageError(f"DFU package: missing component `{component}`")
    part_name = entry.get(part)
    if not isinstance(part_name, str):
        raise PackageError("DFU package: invalid manifest")
    try:
        return archive.read(part_name)
    except KeyError:
        raise PackageError("invalid DFU package") from None