import pytest

from geomapper.engine import HeadlessMapEngine
from geomapper.errors import ExtentError, LayerNotFound
from geomapper.geometry import features_to_planar
from geomapper.layers import Layer
from geomapper.models import StyleDescriptor
from geomapper.session import FIT_MAX_ZOOM, MapSession
from geomapper.sync import AddLayer


def _feature(geometry, /, **properties):
    return {"type": "Feature", "id": properties.pop("fid", None), "geometry": geometry, "properties": properties}


POLYGON_4326 = _feature(
    {"type": "Polygon", "coordinates": [[[-58.5, -36.5], [-58.4, -36.5], [-58.4, -36.4], [-58.5, -36.4], [-58.5, -36.5]]]},
    name="Field",
    fid="way/1",
)
POINT_4326 = _feature({"type": "Point", "coordinates": [-58.45, -36.45]}, name="Well")


@pytest.fixture
def session():
    return MapSession(HeadlessMapEngine())


def _layer(session, layer_id, features_4326, visible=True):
    handle = session.engine.create_vector_layer(features_to_planar(features_4326), StyleDescriptor(), layer_id)
    return Layer(id=layer_id, name=layer_id, handle=handle, visible=visible)


class TestMapSession:

    def test_add_layers_reconciles_once_for_the_batch(self, session):
        """Test a batch is reconciled once."""
        layers = [_layer(session, "a", [POLYGON_4326]), _layer(session, "b", [POINT_4326])]

        added = session.add_layers(layers)

        assert [layer.id for layer in added] == ["a", "b"]
        assert [type(c) for c in session.last_commands].count(AddLayer) == 2
        assert len(session.engine.layers()) == 4

    def test_add_layers_validates_whole_batch_first(self, session):
        """Test the whole batch is validated before any add."""
        session.add_layer(_layer(session, "a", [POINT_4326]))

        with pytest.raises(ValueError):
            session.add_layers([_layer(session, "b", [POINT_4326]), _layer(session, "a", [POINT_4326])])

        assert [layer.id for layer in session.layers()] == ["a"]

    def test_batch_sharing_a_renderable_adds_nothing(self, session):
        """Test a batch whose layers share a renderable leaves registry and engine untouched."""
        handle = _layer(session, "shared", [POINT_4326]).handle
        stack_before = session.engine.layers()

        with pytest.raises(ValueError):
            session.add_layers([Layer(id="a", name="A", handle=handle), Layer(id="b", name="B", handle=handle)])

        assert session.layers() == ()
        assert session.engine.layers() == stack_before

    def test_batch_reusing_a_registered_renderable_adds_nothing(self, session):
        """Test a batch reusing an owned renderable is rejected before any add."""
        owner = session.add_layer(_layer(session, "a", [POINT_4326]))

        with pytest.raises(ValueError):
            session.add_layers([_layer(session, "b", [POINT_4326]), Layer(id="c", name="C", handle=owner.handle)])

        assert [layer.id for layer in session.layers()] == ["a"]
        assert [h for h in session.engine.layers() if not h.reserved] == [owner.handle]

    def test_remove_unknown_layer_leaves_registry_and_stack_unchanged(self, session):
        """Test removing an unknown layer leaves everything unchanged."""
        session.add_layer(_layer(session, "a", [POINT_4326]))
        registry_before = session.layers()
        stack_before = session.engine.layers()

        with pytest.raises(LayerNotFound):
            session.remove_layer("missing")

        assert session.layers() == registry_before
        assert session.engine.layers() == stack_before

    def test_toggle_and_move_are_mirrored_on_the_engine(self, session):
        """Test toggle and move reach the engine."""
        a = session.add_layer(_layer(session, "a", [POINT_4326]))
        b = session.add_layer(_layer(session, "b", [POINT_4326]))

        session.toggle_visible("a")
        session.move_layer("b", 0)

        assert a.handle.visible is False
        assert b.handle.z_index < a.handle.z_index
        assert session.engine.layers()[-1] is session.engine.drawing_layer

    def test_zoom_to_layer_fits_its_extent(self, session):
        """Test zoom fits the layer extent."""
        session.add_layer(_layer(session, "field", [POLYGON_4326]))

        view = session.zoom_to_layer("field")

        extent = session.layer_extent("field")
        assert view[0] <= extent[0] and view[2] >= extent[2]
        assert session.engine.zoom <= FIT_MAX_ZOOM

    def test_zoom_to_empty_or_point_layer_raises_extent_error(self, session):
        """Test zoom refuses empty and point layers."""
        session.add_layer(_layer(session, "empty", []))
        session.add_layer(_layer(session, "well", [POINT_4326]))
        zoom = session.engine.zoom

        with pytest.raises(ExtentError) as excinfo:
            session.zoom_to_layer("empty")
        assert "may be empty or has no valid extent" in excinfo.value.message

        with pytest.raises(ExtentError):
            session.zoom_to_layer("well")
        assert session.engine.zoom == zoom

    def test_inspect_returns_attributes_without_geometry(self, session):
        """Test inspect returns attributes without geometry."""
        field = _feature(
            POLYGON_4326["geometry"],
            name="Field",
            geometry="should not leak",
        )
        layer = session.add_layer(_layer(session, "field", [field]))
        corner = layer.handle.features[0]["geometry"]["coordinates"][0][0]

        attributes = session.inspect(corner, tolerance=1.0)

        assert attributes == {"name": "Field"}
        assert session.inspect((0.0, 0.0)) is None

    def test_export_features_reprojects_and_filters_hidden_layers(self, session):
        """Test export reprojects and skips hidden layers."""
        session.add_layer(_layer(session, "field", [POLYGON_4326]))
        session.add_layer(_layer(session, "well", [POINT_4326], visible=False))

        visible = session.export_features()
        everything = session.export_features(visible_only=False)

        assert [layer.id for layer in visible] == ["field"]
        assert [layer.id for layer in everything] == ["field", "well"]
        ring = visible[0].features[0]["geometry"]["coordinates"][0]
        assert ring[0] == pytest.approx((-58.5, -36.5))
        assert visible[0].features[0]["id"] == "way/1"
