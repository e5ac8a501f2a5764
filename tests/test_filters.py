import pytest

from firewatch.config import FilterSettings
from firewatch.filters import (
    AdminFilters,
    NatureStatusFilters,
    RadiusFilter,
    filter_records,
    from_settings,
    haversine_km,
    keep_by_nature_and_status,
)
from firewatch.normalize import make_wanted_set
from firewatch.records import IncidentRecord


def rec(id="1", area="Sertã", **kw):
    return IncidentRecord(id=id, area_name=area, **kw)


@pytest.fixture
def wanted():
    return make_wanted_set(["Sertã", "Proença-a-Nova"])


def test_area_membership_uses_normalized_names_and_synonyms(wanted):
    records = [
        rec("1", "SERTÃ"),
        rec("2", "Proenca Nova"),
        rec("3", "Lisboa"),
        rec("4", ""),
    ]
    assert [r.id for r in filter_records(records, wanted)] == ["1", "2"]


def test_admin_unit_allow_lists_are_folded_exact(wanted):
    admin = AdminFilters(districts={"castelo branco"}, parishes={"cernache do bonjardim"})
    records = [
        rec("1", district="Castelo Branco", parish="Cernache do Bonjardim"),
        rec("2", district="CASTELO BRANCO", parish="Sertã"),
        rec("3", district="Santarém", parish="Cernache do Bonjardim"),
    ]
    assert [r.id for r in filter_records(records, wanted, admin=admin)] == ["1"]


def test_exclude_status_codes():
    rules = NatureStatusFilters(exclude_status_codes={7})
    assert not keep_by_nature_and_status(rec(status_code=7.0), rules)
    assert keep_by_nature_and_status(rec(status_code=5.0), rules)
    assert keep_by_nature_and_status(rec(), rules)


def test_nature_code_include_and_exclude():
    assert not keep_by_nature_and_status(
        rec(nature_code="3103"), NatureStatusFilters(exclude_nature_codes={"3103"}))
    assert not keep_by_nature_and_status(
        rec(nature_code="2101"), NatureStatusFilters(include_nature_codes={"3103"}))
    assert keep_by_nature_and_status(
        rec(nature_code="3103"), NatureStatusFilters(include_nature_codes={"3103"}))


def test_status_rules_match_substrings():
    rules = NatureStatusFilters(exclude_status={"vigilancia"})
    assert not keep_by_nature_and_status(rec(status="Em Vigilância"), rules)
    assert keep_by_nature_and_status(rec(status="Em Curso"), rules)

    rules = NatureStatusFilters(include_status={"curso"})
    assert keep_by_nature_and_status(rec(status="Em Curso"), rules)
    assert not keep_by_nature_and_status(rec(status="Despacho"), rules)


def test_include_nature_matches_text_code_or_substring():
    rules = NatureStatusFilters(include_nature={"mato", "3105"})
    assert keep_by_nature_and_status(rec(nature="Mato"), rules)
    assert keep_by_nature_and_status(rec(nature="Agrícola", nature_code="3105"), rules)
    assert keep_by_nature_and_status(rec(nature="Incêndio em mato denso"), rules)
    assert not keep_by_nature_and_status(rec(nature="Urbano"), rules)
    assert not keep_by_nature_and_status(rec(nature=""), rules)


def test_haversine_known_distance():
    # Lisboa -> Porto, roughly 274 km great-circle
    assert haversine_km(38.7223, -9.1393, 41.1579, -8.6291) == pytest.approx(274, abs=3)
    assert haversine_km(39.8, -8.1, 39.8, -8.1) == 0


def test_radius_filter_drops_far_and_coordinate_less_records(wanted):
    radius = RadiusFilter(center_lat=39.80, center_lon=-8.10, radius_km=10)
    records = [
        rec("near", coordinates=(39.82, -8.08)),
        rec("far", coordinates=(40.5, -7.5)),
        rec("none"),
    ]
    assert [r.id for r in filter_records(records, wanted, radius=radius)] == ["near"]


def test_radius_filter_disabled_without_radius(wanted):
    radius = RadiusFilter(center_lat=39.8, center_lon=-8.1, radius_km=0)
    assert len(filter_records([rec("none")], wanted, radius=radius)) == 1


def test_from_settings_folds_values():
    admin, rules, radius = from_settings(FilterSettings(
        districts=["Santarém"],
        include_status=["Em Resolução"],
        exclude_status_codes={3},
        center_lat=39.8, center_lon=-8.1, radius_km=5,
    ))
    assert admin.districts == {"santarem"}
    assert rules.include_status == {"em resolucao"}
    assert rules.exclude_status_codes == {3}
    assert radius.enabled
