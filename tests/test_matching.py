import math

import pytest

from fleet import AmbulanceStatus, DispatchMatcher, DispatchSettings, GeoPoint
from matching import (
    AmbulanceCandidate,
    AmbulanceMatch,
    MatchRequest,
    NearestAmbulanceMatcher,
    estimate_eta_minutes,
    get_matcher,
    sort_matches,
)


def _match(ambulance_id, eta, distance):
    return AmbulanceMatch(ambulance_id=ambulance_id, provider_id="p", eta_minutes=eta, distance_km=distance)


def test_sort_orders_by_eta_then_distance():
    a = _match("A", 5, 2.0)
    b = _match("B", 5, 1.0)
    c = _match("C", 3, 9.0)
    assert [m.ambulance_id for m in sort_matches([a, b, c])] == ["C", "B", "A"]


def test_sort_breaks_full_ties_by_id():
    ranked = sort_matches([_match("z", 2, 1.0), _match("a", 2, 1.0)])
    assert [m.ambulance_id for m in ranked] == ["a", "z"]


def test_eta_rounds_up_to_whole_minutes():
    assert estimate_eta_minutes(1.1119, 30.0) == 3
    assert estimate_eta_minutes(5.0, 30.0) == 10
    assert estimate_eta_minutes(0.0, 30.0) == 0
    with pytest.raises(ValueError):
        estimate_eta_minutes(1.0, 0)


def test_nearest_matcher_skips_unlocatable_candidates():
    candidates = [
        AmbulanceCandidate("ghost", "p", None, None),
        AmbulanceCandidate("nan", "p", math.nan, 0.0),
        AmbulanceCandidate("near", "p", 0.0, 0.01),
    ]
    ranked = NearestAmbulanceMatcher().rank(candidates, MatchRequest(0.0, 0.0))
    assert [m.ambulance_id for m in ranked] == ["near"]
    assert ranked[0].eta_minutes == 3


def test_nearest_matcher_applies_radius_and_limit():
    candidates = [
        AmbulanceCandidate("far", "p", 0.0, 0.05),
        AmbulanceCandidate("mid", "p", 0.0, 0.02),
        AmbulanceCandidate("near", "p", 0.0, 0.01),
    ]
    within = NearestAmbulanceMatcher().rank(candidates, MatchRequest(0.0, 0.0, max_distance_km=3.0))
    assert [m.ambulance_id for m in within] == ["near", "mid"]

    top = NearestAmbulanceMatcher().rank(candidates, MatchRequest(0.0, 0.0, limit=1))
    assert [m.ambulance_id for m in top] == ["near"]


def test_empty_candidates_give_empty_ranking():
    assert NearestAmbulanceMatcher().rank([], MatchRequest(0.0, 0.0)) == []


def test_get_matcher():
    assert isinstance(get_matcher("Nearest"), NearestAmbulanceMatcher)
    with pytest.raises(ValueError):
        get_matcher("cheapest")


def test_only_available_located_ambulances_are_ranked(registry, add_ambulance):
    add_ambulance("amb-near", 0.0, 0.01)
    add_ambulance("amb-far", 0.0, 0.05)
    add_ambulance("amb-offline", 0.0, 0.001, status=AmbulanceStatus.OFFLINE)
    add_ambulance("amb-unplaced", None)
    matcher = DispatchMatcher(registry)

    ranked = matcher.match(GeoPoint(0.0, 0.0))

    assert [m.ambulance_id for m in ranked] == ["amb-near", "amb-far"]
    assert ranked[0].distance_km == pytest.approx(1.112, abs=0.01)
    assert ranked[0].eta_minutes < ranked[1].eta_minutes


def test_match_scoped_to_providers(registry, add_ambulance):
    add_ambulance("ours", 0.0, 0.02, provider="prov-1")
    add_ambulance("theirs", 0.0, 0.01, provider="prov-2")
    ranked = DispatchMatcher(registry).match(GeoPoint(0.0, 0.0), provider_ids=["prov-1"])
    assert [m.ambulance_id for m in ranked] == ["ours"]


def test_settings_supply_default_radius_and_limit(registry, add_ambulance):
    add_ambulance("a", 0.0, 0.01)
    add_ambulance("b", 0.0, 0.02)
    add_ambulance("c", 0.0, 0.5)
    settings = DispatchSettings(max_match_distance_km=10.0, match_limit=1)
    matcher = DispatchMatcher(registry, settings)

    assert [m.ambulance_id for m in matcher.match(GeoPoint(0.0, 0.0))] == ["a"]
    assert len(matcher.match(GeoPoint(0.0, 0.0), limit=5)) == 2


def test_matching_does_not_touch_state(registry, add_ambulance):
    add_ambulance("a", 0.0, 0.01)
    before = registry.get("a")
    DispatchMatcher(registry).match(GeoPoint(0.0, 0.0))
    after = registry.get("a")
    assert after.version == before.version
    assert after.status is AmbulanceStatus.AVAILABLE
