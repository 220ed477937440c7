import geopandas as gpd
import pytest

from disruption_etl.etl.models import SegmentRecord
from disruption_etl.etl.segments import SegmentLoader, SegmentStore
from disruption_etl.utils import geohash


@pytest.fixture
def segments(make_segment):
    return [
        make_segment(1, "Bloor St W", (-79.400, 43.665), (-79.401, 43.6652), (-79.402, 43.6654)),
        make_segment(2, "Bloor St W", (-79.450, 43.655), (-79.451, 43.6552), (-79.452, 43.6554)),
        make_segment(3, "Dundas St W", (-79.410, 43.652), (-79.411, 43.6522), (-79.412, 43.6524)),
    ]


def test_replace_segments_stores_normalized_name_and_geohash(segment_store, segments):
    assert segment_store.replace_segments(segments) == 3

    row = segment_store.db.fetchone(
        "SELECT normalized_name, center_lat, center_lon, geohash, geohash_coarse, geometry "
        "FROM street_segments WHERE centreline_id = 1"
    )
    normalized, lat, lon, cell, coarse, wkt = row
    assert normalized == "bloor st w"
    assert (lat, lon) == pytest.approx((43.6652, -79.401))
    assert cell == geohash.encode(43.6652, -79.401, 7)
    assert coarse == cell[:6]
    assert wkt.startswith("LINESTRING")


def test_replace_segments_replaces_previous_set(segment_store, segments, make_segment):
    segment_store.replace_segments(segments)
    segment_store.replace_segments([make_segment(9, "Queen St E", (-79.35, 43.66), (-79.351, 43.661))])

    assert segment_store.count() == 1
    assert segment_store.street_names() == ["Queen St E"]


def test_segment_without_geometry_is_kept_without_location(segment_store, segments):
    segment_store.replace_segments(segments + [SegmentRecord(centreline_id=4, street_name="Yonge St")])

    (found,) = segment_store.segments_for_street("Yonge St")
    assert found.center_lat is None
    assert found.geohash is None


def test_street_names_are_cached_until_cleared(segment_store, segments, clock):
    segment_store.replace_segments(segments)
    assert segment_store.street_names() == ["Bloor St W", "Dundas St W"]

    segment_store.db.execute(
        "INSERT INTO street_segments (centreline_id, street_name, normalized_name, updated_at) VALUES (5, 'Bay St', 'bay st', ?)",
        [clock.now],
    )
    assert "Bay St" not in segment_store.street_names()

    segment_store.clear_cache()
    assert "Bay St" in segment_store.street_names()


def test_segments_for_street(segment_store, segments):
    segment_store.replace_segments(segments)

    assert [s.centreline_id for s in segment_store.segments_for_street("Bloor St W")] == [1, 2]
    assert segment_store.segments_for_street("Nowhere Rd") == []


def test_segments_near_uses_geohash_cell_and_neighbours(segment_store, segments):
    segment_store.replace_segments(segments)

    near = segment_store.segments_near(43.6652, -79.401)

    assert [s.centreline_id for s in near] == [1]


def test_to_geodataframe(segment_store, segments):
    segment_store.replace_segments(segments)

    gdf = segment_store.to_geodataframe()

    assert isinstance(gdf, gpd.GeoDataFrame)
    assert len(gdf) == 3
    assert set(gdf.geom_type) == {"LineString"}


def test_invalid_precision_rejected(db):
    with pytest.raises(ValueError):
        SegmentStore(db, precision=0)


class StubCentreline:
    def __init__(self, segments):
        self.segments = segments

    def fetch_segments(self):
        return self.segments


def test_loader_runs_pipeline_steps(segment_store, segments, capsys):
    loader = SegmentLoader(StubCentreline(segments), segment_store)

    assert loader.run() == 3
    assert segment_store.count() == 3
    out = capsys.readouterr().out
    assert "Fetch Centreline" in out
    assert "Store Segments" in out


def test_loader_reports_failed_step(segment_store):
    class Broken:
        def fetch_segments(self):
            raise RuntimeError("portal down")

    loader = SegmentLoader(Broken(), segment_store)

    with pytest.raises(RuntimeError):
        loader.run()
