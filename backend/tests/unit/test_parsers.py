import io
import zipfile

import orjson
import pytest
import shapefile
from pyproj import CRS

from geomapper.engine import HeadlessMapEngine
from geomapper.errors import ParseError
from geomapper.geometry import lonlat_to_planar
from geomapper.models import LayerOrigin
from geomapper.parsers import build_upload_layer, parse_archive, parse_upload
from geomapper.parsers.geojson import parse_geojson
from geomapper.parsers.kml import parse_kml, parse_kmz
from geomapper.parsers.shp import parse_shapefile

SQUARE = {
    "type": "Polygon",
    "coordinates": [[[150.0, -27.0], [150.1, -27.0], [150.1, -26.9], [150.0, -26.9], [150.0, -27.0]]],
}

KML_DOCUMENT = b"""<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2">
  <Document>
    <name>Paddocks</name>
    <Folder>
      <name>North</name>
      <Placemark>
        <name>Paddock 1</name>
        <description>Rested</description>
        <ExtendedData>
          <Data name="area_ha"><value>12.5</value></Data>
        </ExtendedData>
        <Polygon>
          <outerBoundaryIs><LinearRing>
            <coordinates>150.0,-27.0 150.1,-27.0 150.1,-26.9 150.0,-26.9 150.0,-27.0</coordinates>
          </LinearRing></outerBoundaryIs>
        </Polygon>
      </Placemark>
    </Folder>
    <Placemark>
      <name>Bore</name>
      <Point><coordinates>150.05,-26.95</coordinates></Point>
    </Placemark>
  </Document>
</kml>
"""


def _geojson_bytes(document):
    return orjson.dumps(document)


def _write_shapefile(directory, stem, prj=None, coordinates=None):
    path = str(directory / stem)
    writer = shapefile.Writer(path, shapeType=shapefile.POLYGON)
    writer.field("NAME", "C", size=40)
    writer.poly(coordinates or [SQUARE["coordinates"][0]])
    writer.record("Paddock")
    writer.close()
    parts = {}
    for ext in (".shp", ".shx", ".dbf"):
        with open(f"{path}{ext}", "rb") as handle:
            parts[ext] = handle.read()
    if prj is not None:
        parts[".prj"] = prj.encode("utf-8")
    return parts


def _zip(members):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, data in members.items():
            archive.writestr(name, data)
    return buffer.getvalue()


class TestGeoJSON:

    def test_feature_collection(self):
        """Test FeatureCollection documents."""
        content = _geojson_bytes({
            "type": "FeatureCollection",
            "features": [
                {"type": "Feature", "geometry": SQUARE, "properties": {"name": "A"}},
                {"type": "Feature", "geometry": None, "properties": {"name": "no geometry"}},
            ],
        })

        features = parse_geojson(content)

        assert len(features) == 1
        assert features[0]["properties"] == {"name": "A"}
        assert features[0]["geometry"]["type"] == "Polygon"

    def test_single_feature_and_bare_geometry(self):
        """Test single features and bare geometries."""
        feature = {"type": "Feature", "geometry": SQUARE, "properties": None}
        assert len(parse_geojson(_geojson_bytes(feature))) == 1
        assert parse_geojson(_geojson_bytes(SQUARE))[0]["properties"] == {}

    @pytest.mark.parametrize(
        "content",
        [b"{not json", b"[1, 2]", b'{"type": "Topology"}', b'{"type": "FeatureCollection"}'],
    )
    def test_invalid_documents_raise_parse_error(self, content):
        """Test invalid documents raise ParseError."""
        with pytest.raises(ParseError):
            parse_geojson(content)


class TestKML:

    def test_placemarks_in_nested_folders(self):
        """Test placemarks inside nested folders."""
        features = parse_kml(KML_DOCUMENT)

        by_name = {f["properties"]["name"]: f for f in features}
        assert set(by_name) == {"Paddock 1", "Bore"}
        paddock = by_name["Paddock 1"]
        assert paddock["geometry"]["type"] == "Polygon"
        assert paddock["properties"]["description"] == "Rested"
        assert paddock["properties"]["area_ha"] == "12.5"
        assert by_name["Bore"]["geometry"]["type"] == "Point"

    def test_kmz_reads_first_kml(self):
        """Test KMZ reads its first KML."""
        content = _zip({"doc.kml": KML_DOCUMENT, "files/readme.txt": b"ignored"})
        assert len(parse_kmz(content)) == 2

    def test_kmz_without_kml(self):
        """Test KMZ archives without KML."""
        with pytest.raises(ParseError):
            parse_kmz(_zip({"readme.txt": b"nothing"}))

    def test_broken_kmz(self):
        """Test unreadable KMZ archives."""
        with pytest.raises(ParseError):
            parse_kmz(b"not a zip")


class TestShapefile:

    def test_wgs84_shapefile(self, tmp_path):
        """Test WGS84 shapefiles."""
        parts = _write_shapefile(tmp_path, "paddocks")

        features = parse_shapefile(parts[".shp"], parts[".shx"], parts[".dbf"])

        assert len(features) == 1
        assert features[0]["properties"] == {"NAME": "Paddock"}
        assert features[0]["geometry"]["type"] == "Polygon"

    def test_projected_shapefile_is_reprojected_to_degrees(self, tmp_path):
        """Test projected shapefiles are reprojected to degrees."""
        ring = [lonlat_to_planar(lon, lat) for lon, lat in SQUARE["coordinates"][0]]
        parts = _write_shapefile(
            tmp_path,
            "mercator",
            prj=CRS.from_epsg(3857).to_wkt(),
            coordinates=[ring],
        )

        features = parse_shapefile(parts[".shp"], parts[".shx"], parts[".dbf"], parts[".prj"])

        lon, lat = features[0]["geometry"]["coordinates"][0][0]
        assert 149.9 < lon < 150.2
        assert -27.1 < lat < -26.8

    def test_zip_archive_with_shapefile_and_geojson(self, tmp_path):
        """Test zip archives with a shapefile and GeoJSON."""
        parts = _write_shapefile(tmp_path, "paddocks")
        members = {f"data/paddocks{ext}": data for ext, data in parts.items()}
        members["extra.geojson"] = _geojson_bytes(SQUARE)

        features = parse_archive(_zip(members))

        assert len(features) == 2

    def test_zip_with_incomplete_shapefile(self, tmp_path):
        """Test zip archives with an incomplete shapefile."""
        parts = _write_shapefile(tmp_path, "paddocks")
        content = _zip({"paddocks.shp": parts[".shp"], "paddocks.dbf": parts[".dbf"]})

        with pytest.raises(ParseError) as excinfo:
            parse_archive(content)
        assert ".shx" in excinfo.value.message


class TestParseUpload:

    def test_dispatches_on_extension(self):
        """Test dispatch on file extension."""
        assert len(parse_upload("paddocks.KML", KML_DOCUMENT)) == 2
        assert len(parse_upload("area.geojson", _geojson_bytes(SQUARE))) == 1

    def test_unsupported_extension(self):
        """Test unsupported extensions."""
        with pytest.raises(ParseError) as excinfo:
            parse_upload("notes.txt", b"hello")
        assert "Unsupported file type" in excinfo.value.message

    def test_bare_shp_is_rejected(self):
        """Test a bare .shp upload is rejected."""
        with pytest.raises(ParseError):
            parse_upload("paddocks.shp", b"\x00\x00\x27\x0a")

    def test_empty_file(self):
        """Test empty uploads."""
        with pytest.raises(ParseError):
            parse_upload("empty.geojson", b"")

    def test_file_without_features(self):
        """Test files without features."""
        content = _geojson_bytes({"type": "FeatureCollection", "features": []})
        with pytest.raises(ParseError) as excinfo:
            parse_upload("nothing.geojson", content)
        assert "No features found in nothing.geojson" in excinfo.value.message


class TestBuildUploadLayer:

    def test_build_upload_layer_projects_features_for_display(self):
        """Test upload layers hold planar features."""
        engine = HeadlessMapEngine()
        features = parse_geojson(_geojson_bytes(SQUARE))

        layer = build_upload_layer("My Paddocks.geojson", features, engine, clock=lambda: 1700000000.0)

        assert layer.id.startswith("upload-My-Paddocks.geojson-1700000000000-")
        assert layer.name == "My Paddocks.geojson"
        assert layer.origin is LayerOrigin.UPLOAD
        assert layer.visible
        x, y = layer.handle.features[0]["geometry"]["coordinates"][0][0]
        assert (x, y) == pytest.approx(lonlat_to_planar(150.0, -27.0))
