from path_timeline.models import SignificantPlace
from path_timeline.places import NewPlaceRequest, PlaceResolver, resolve_place

from tracks import HOME


def _place(place_id, lat, lon, polygon=None):
    return SignificantPlace(place_id=place_id, latitude=lat, longitude=lon, polygon=polygon)


def test_closest_place_within_radius_wins():
    near = _place(2, 50.0003, 8.0)
    nearer = _place(3, 50.0001, 8.0)
    far = _place(4, 50.01, 8.0)
    assert resolve_place(*HOME, [near, nearer, far], 100.0) == nearer


def test_ties_go_to_lower_id():
    a = _place(7, 50.0002, 8.0)
    b = _place(5, 50.0002, 8.0)
    assert resolve_place(*HOME, [a, b], 100.0).place_id == 5


def test_polygon_containment_beats_radius():
    close = _place(1, 50.00001, 8.0)
    fenced = _place(2, 50.0008, 8.0008, polygon=((49.999, 7.999), (49.999, 8.002), (50.002, 8.002), (50.002, 7.999)))
    assert resolve_place(*HOME, [close, fenced], 100.0) == fenced


def test_polygon_places_do_not_match_by_radius():
    fenced = _place(2, 50.0001, 8.0, polygon=((50.001, 8.001), (50.001, 8.002), (50.002, 8.002)))
    assert resolve_place(*HOME, [fenced], 100.0) == NewPlaceRequest(*HOME)


def test_resolver_creates_and_reuses_places(store):
    resolver = PlaceResolver(store)
    created = resolver.resolve("u", *HOME, 100.0)
    reused = resolver.resolve("u", 50.0002, 8.0, 100.0)
    assert reused == created
    assert resolver.created == [created]
    assert store.places("u") == [created]
