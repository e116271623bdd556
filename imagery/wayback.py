from __future__ import annotations

"""
Esri World Imagery Wayback adapter (snapshot catalog).

Wayback publishes the historical basemap as one WMTS layer per release:
    <Layer>
      <ows:Title>World Imagery (Wayback 2014-02-20)</ows:Title>
      <ResourceURL resourceType="tile"
                   template=".../MapServer/tile/10/{TileMatrix}/{TileRow}/{TileCol}"/>
    </Layer>
The release id is the path segment after /tile/.
"""

import logging
import re
import xml.etree.ElementTree as ET
from datetime import date
from typing import List, Optional

import requests

from common.errors import CatalogError
from common.types import SnapshotVersion


log = logging.getLogger(__name__)

DEFAULT_CAPABILITIES_URL = (
    "https://wayback.maptiles.arcgis.com/arcgis/rest/services/World_Imagery/"
    "MapServer/WMTS/1.0.0/WMTSCapabilities.xml"
)

_DATE_RE = re.compile(r"Wayback\s+(\d{4}-\d{2}-\d{2})")
_RELEASE_RE = re.compile(r"/tile/(\d+)/")

# WMTS RESTful placeholders -> XYZ placeholders
_WMTS_TO_XYZ = (
    ("{TileMatrixSet}", "GoogleMapsCompatible"),
    ("{TileMatrix}", "{z}"),
    ("{TileRow}", "{y}"),
    ("{TileCol}", "{x}"),
)


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def wmts_to_xyz_template(template: str) -> str:
    for src, dst in _WMTS_TO_XYZ:
        template = template.replace(src, dst)
    return template


def _parse_layer(layer: ET.Element) -> Optional[SnapshotVersion]:
    title = ""
    tile_tpl = ""
    for child in layer:
        name = _local(child.tag)
        if name == "Title" and child.text:
            title = child.text.strip()
        elif name == "ResourceURL" and child.get("resourceType") == "tile" and not tile_tpl:
            tile_tpl = child.get("template") or ""
    if not title or not tile_tpl:
        return None

    m = _DATE_RE.search(title)
    if not m:
        return None
    try:
        day = date.fromisoformat(m.group(1))
    except ValueError:
        return None

    rid = _RELEASE_RE.search(tile_tpl)
    if not rid:
        return None
    return SnapshotVersion(id=int(rid.group(1)), date=day, tile_url_template=wmts_to_xyz_template(tile_tpl), title=title)


def parse_capabilities(xml_text: str) -> List[SnapshotVersion]:
    """
    Parse WMTS capabilities into versions, newest first (date desc, then id desc).
    Layers without a Wayback date, tile template or release id are skipped.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise CatalogError(f"Could not parse Wayback WMTS capabilities: {e}") from e

    out = [v for v in (_parse_layer(el) for el in root.iter() if _local(el.tag) == "Layer") if v]
    out.sort(key=lambda v: (v.date, v.id), reverse=True)
    return out


class WaybackCatalog:
    def __init__(
        self,
        session: Optional[requests.Session] = None,
        capabilities_url: str = DEFAULT_CAPABILITIES_URL,
        timeout: float = 20.0,
    ):
        self.session = session or requests.Session()
        self.capabilities_url = capabilities_url
        self.timeout = float(timeout)

    def versions(self) -> List[SnapshotVersion]:
        try:
            r = self.session.get(self.capabilities_url, timeout=self.timeout)
        except requests.RequestException as e:
            raise CatalogError(f"Wayback request error: {e}") from e
        if r.status_code != 200:
            log.warning("Wayback capabilities failed: %s %s", r.status_code, r.text[:200])
            raise CatalogError(f"Wayback capabilities failed: {r.status_code} {r.reason}")

        versions = parse_capabilities(r.text)
        if not versions:
            raise CatalogError("Could not parse Wayback WMTS capabilities.")
        log.info("Wayback versions", extra={"extra": {"count": len(versions), "newest": versions[0].date.isoformat()}})
        return versions
