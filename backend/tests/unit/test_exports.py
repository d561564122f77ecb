import io
import xml.etree.ElementTree as ET
import zipfile

import orjson
import pytest
import shapefile

from geomapper.exports.archive import export_archive
from geomapper.exports.geojson import export_geojson
from geomapper.exports.kml import export_kml
from geomapper.exports.kmz import export_kmz
from geomapper.exports.shp import WGS84_PRJ, export_shapefile_zip
from geomapper.models import ExportLayer, StyleDescriptor
from geomapper.style.colors import hex_to_kml_color

KML_NS = {"kml": "http://www.opengis.net/kml/2.2"}

POLYGON = {
    "type": "Polygon",
    "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]],
}
MULTIPOLYGON = {
    "type": "MultiPolygon",
    "coordinates": [
        [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]],
        [[[2, 2], [3, 2], [3, 3], [2, 3], [2, 2]]],
    ],
}
LINE = {"type": "LineString", "coordinates": [[0, 0], [1, 1], [2, 1]]}
POINT = {"type": "Point", "coordinates": [0.5, 0.5]}


def _feature(geometry, **properties):
    return {"type": "Feature", "geometry": geometry, "properties": properties}


def _layers():
    return [
        ExportLayer(
            id="osm-buildings-1",
            name="OSM Buildings (2)",
            style=StyleDescriptor(strokeColor="#B91C1C", strokeWidth=1.0, fillColor="#EF4444", fillOpacity=0.5),
            features=[_feature(POLYGON, name="Hall"), _feature(MULTIPOLYGON, building="yes")],
        ),
        ExportLayer(
            id="osm-roads_paths-1",
            name="OSM Roads & Paths (1)",
            style=StyleDescriptor(strokeColor="#F97316", strokeWidth=2.5),
            features=[_feature(LINE, highway="track")],
        ),
        ExportLayer(
            id="upload-bores",
            name="bores.kml",
            features=[_feature(POINT, name="Bore 7")],
        ),
    ]


def _count(kml_str, tag):
    root = ET.fromstring(kml_str.encode("utf-8"))
    return len(root.findall(f".//kml:{tag}", KML_NS))


class TestKMLColors:

    def test_hex_to_kml_color_swaps_channels_and_adds_alpha(self):
        """Test hex colours become aabbggrr."""
        assert hex_to_kml_color("#FF8000", 1.0) == "ff0080ff"
        assert hex_to_kml_color("#FF8000", 0.5) == "800080ff"
        assert hex_to_kml_color("bad", 1.0) == "ff0000ff"


class TestGeoJSONExport:

    def test_flattens_layers_and_tags_source(self):
        """Test layers are flattened and tagged with their source."""
        collection = orjson.loads(export_geojson(_layers()))

        assert collection["type"] == "FeatureCollection"
        assert len(collection["features"]) == 4
        first = collection["features"][0]
        assert first["properties"]["layer_id"] == "osm-buildings-1"
        assert first["properties"]["layer_name"] == "OSM Buildings (2)"
        assert first["properties"]["name"] == "Hall"

    def test_empty_export_raises(self):
        """Test empty exports raise ValueError."""
        with pytest.raises(ValueError):
            export_geojson([ExportLayer(id="a", name="a", features=[])])


class TestKMLExport:

    def test_one_folder_per_layer(self):
        """Test one folder per layer."""
        kml_output = export_kml(_layers())

        root = ET.fromstring(kml_output.encode("utf-8"))
        folders = root.findall(".//kml:Folder", KML_NS)
        names = [folder.find("kml:name", KML_NS).text for folder in folders]
        assert names == ["OSM Buildings (2)", "OSM Roads & Paths (1)", "bores.kml"]

    def test_multipolygon_parts_become_separate_placemarks(self):
        """Test multipolygon parts get one placemark each."""
        kml_output = export_kml(_layers())

        assert _count(kml_output, "Placemark") == 5
        assert _count(kml_output, "Polygon") == 3
        assert _count(kml_output, "LineString") == 1
        assert _count(kml_output, "Point") == 1

    def test_layer_style_is_applied(self):
        """Test the layer style reaches the KML styles."""
        kml_output = export_kml(_layers()[:1])

        assert hex_to_kml_color("#EF4444", 0.5) in kml_output
        assert hex_to_kml_color("#B91C1C", 1.0) in kml_output

    def test_properties_written_as_extended_data(self):
        """Test properties are written as ExtendedData."""
        kml_output = export_kml(_layers()[1:2])

        root = ET.fromstring(kml_output.encode("utf-8"))
        data = root.find(".//kml:Data[@name='highway']/kml:value", KML_NS)
        assert data is not None and data.text == "track"

    def test_empty_export_raises(self):
        """Test empty exports raise ValueError."""
        with pytest.raises(ValueError):
            export_kml([])


class TestKMZExport:

    def test_kmz_wraps_doc_kml(self):
        """Test KMZ archives hold doc.kml."""
        content = export_kmz(_layers())

        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            assert archive.namelist() == ["doc.kml"]
            kml_output = archive.read("doc.kml").decode("utf-8")
        assert _count(kml_output, "Placemark") == 5


class TestShapefileExport:

    def test_one_shapefile_per_geometry_family(self):
        """Test one shapefile per geometry family."""
        content = export_shapefile_zip(_layers(), "My Export")

        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            names = set(archive.namelist())
            assert {f"My-Export_polygons{ext}" for ext in (".shp", ".shx", ".dbf", ".prj")} <= names
            assert "My-Export_lines.shp" in names
            assert "My-Export_points.shp" in names
            assert archive.read("My-Export_polygons.prj").decode("utf-8") == WGS84_PRJ
            reader = shapefile.Reader(
                shp=io.BytesIO(archive.read("My-Export_polygons.shp")),
                shx=io.BytesIO(archive.read("My-Export_polygons.shx")),
                dbf=io.BytesIO(archive.read("My-Export_polygons.dbf")),
            )
            records = reader.records()

        assert len(records) == 2
        assert records[0]["LAYER"] == "OSM Buildings (2)"
        assert records[0]["NAME"] == "Hall"
        assert reader.shapeType == shapefile.POLYGON

    def test_only_present_families_are_written(self):
        """Test missing families are not written."""
        content = export_shapefile_zip(_layers()[1:2])

        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            stems = {name.rsplit(".", 1)[0] for name in archive.namelist()}
        assert stems == {"export_lines"}

    def test_empty_export_raises(self):
        """Test empty exports raise ValueError."""
        with pytest.raises(ValueError):
            export_shapefile_zip([ExportLayer(id="a", name="a", features=[_feature(None)])])


class TestArchiveExport:

    def test_archive_bundles_every_format(self):
        """Test the archive bundles every format."""
        content = export_archive(_layers(), "survey")

        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            assert sorted(archive.namelist()) == ["survey.geojson", "survey.kml", "survey_shp.zip"]
            inner = zipfile.ZipFile(io.BytesIO(archive.read("survey_shp.zip")))
            assert "survey_points.shp" in inner.namelist()
