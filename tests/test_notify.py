from datetime import datetime, timedelta, timezone

import pytest
import requests

from firewatch.config import NotifySettings
from firewatch.detect import detect
from firewatch.events import Breakdown, DailySummary, HourlySummary, Message, StatusTransition
from firewatch.kml import KmlInfo
from firewatch.normalize import make_wanted_set
from firewatch.notify import (
    MessageRenderer,
    Notifier,
    add_tag,
    annotation_tags,
    build_actions,
    in_quiet_hours,
    maps_url,
    resource_tags_and_priority,
    status_priority,
)
from firewatch.records import IncidentRecord, ResourceCounts
from firewatch.state import State

T0 = datetime(2025, 8, 1, 12, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


def fire(id="A", area="Sertã", status="Despacho", **props):
    p = {"id": id, "concelho": area, "status": status, "natureza": "Mato"}
    p.update(props)
    geometry = {"type": "Point", "coordinates": [-8.09, 39.8]}
    return IncidentRecord.from_feature(p, geometry)


@pytest.fixture
def wanted():
    return make_wanted_set(["Sertã", "Oleiros"])


@pytest.fixture
def settings():
    return NotifySettings(topic="test-topic", tags="fire", priority="5")


def header(call, name):
    return call["headers"][name].decode("utf-8")


# --- helpers ---

def test_add_tag_is_case_insensitive_and_skips_blanks():
    assert add_tag("", "fire") == "fire"
    assert add_tag("fire", "FIRE") == "fire"
    assert add_tag("fire", "zzz") == "fire,zzz"
    assert add_tag("fire", " ") == "fire"


@pytest.mark.parametrize("status, expected", [
    ("Despacho de 1º Alerta", "4"),
    ("Em Curso", "2"),
    ("Em Resolução", "2"),
    ("Em Vigilância", "3"),
    ("Conclusão", "3"),
    ("Outro", "5"),
])
def test_status_priority(status, expected):
    assert status_priority(status, "5") == expected


def test_resource_thresholds_add_tags_and_raise_priority(settings):
    settings.min_man = 20
    settings.min_aerial = 1
    settings.min_terrain = 10
    record = IncidentRecord(id="A", area_name="Sertã",
                            resources=ResourceCounts(personnel=25, ground_vehicles=3, aircraft=2))
    tags, priority = resource_tags_and_priority(record, settings, "fire", "5")
    assert tags == "fire,man,aerial"
    assert priority == "2"


def test_resource_thresholds_disabled_by_default(settings):
    record = IncidentRecord(id="A", area_name="Sertã", resources=ResourceCounts(personnel=500))
    assert resource_tags_and_priority(record, settings, "fire", "5") == ("fire", "5")


def test_annotation_tags():
    assert annotation_tags("EN238 cortada ao trânsito") == ["no_entry"]
    assert annotation_tags("Estrada reaberta") == ["white_check_mark"]
    assert annotation_tags("") == []


@pytest.mark.parametrize("window, hour, expected", [
    ("23-7", 23, True),
    ("23-7", 3, True),
    ("23-7", 7, False),
    ("22:00-07:00", 12, False),
    ("9-17", 9, True),
    ("9-17", 17, False),
    ("5-5", 14, True),
    ("", 3, False),
    ("late-early", 3, False),
])
def test_in_quiet_hours(window, hour, expected):
    assert in_quiet_hours(window, datetime(2025, 8, 1, hour, 0)) is expected


def test_maps_url_prefers_coordinates():
    assert maps_url(fire(), "Sertã") == \
        "https://www.google.com/maps/search/?api=1&query=39.800000,-8.090000"
    bare = IncidentRecord(id="A", area_name="Sertã")
    assert maps_url(bare, "Sertã") == \
        "https://www.google.com/maps/search/?api=1&query=Sert%C3%A3%2C+Portugal"
    assert maps_url(bare, " ") == ""


def test_build_actions_from_link_and_body():
    body = "ID: 1\nÁrea URL: file:///tmp/1.kml\nFogos: https://fogos.pt/fogo/1"
    actions = build_actions(body, "https://maps.example/x")
    assert actions == ("view, Abrir Mapa, https://maps.example/x; "
                       "view, Abrir Fogos, https://fogos.pt/fogo/1; "
                       "view, Abrir área, file:///tmp/1.kml")
    assert build_actions("nothing here", "") == ""


# --- rendering ---

def test_new_incident_message(settings, wanted):
    result = detect([fire(man=12, extra="EN2 cortada")], State(), wanted, T0)
    renderer = MessageRenderer(settings)
    new_msg, status_msg = renderer.render(result, [], total_active=3)

    assert new_msg.title == "Novo em Sertã — Mato"
    assert "ID: A" in new_msg.body
    assert "Meios: man=12, ter=0, air=0, aq=0" in new_msg.body
    assert "Extra: EN2 cortada" in new_msg.body
    assert "Total ativo no alvo: 3" in new_msg.body
    assert new_msg.body.endswith("Fogos: https://fogos.pt/fogo/A")
    assert "no_entry" in new_msg.tags.split(",")
    assert new_msg.link.startswith("https://www.google.com/maps/")

    assert status_msg.title == "Novo → Despacho — Sertã"
    assert status_msg.priority == "4"


def test_new_incident_with_kml(settings, wanted, tmp_path):
    saved = []

    def saver(kml, save_dir, incident_id):
        saved.append((kml, save_dir, incident_id))
        return KmlInfo(path=tmp_path / "A.kml", area_km2=1.234, perimeter_km=5.67)

    settings.save_kml_dir = str(tmp_path)
    result = detect([fire(kmlVost="<kml/>")], State(), wanted, T0)
    msg = MessageRenderer(settings, kml_saver=saver).render(result, [], 1)[0]
    assert saved == [("<kml/>", str(tmp_path), "A")]
    assert "Área: 1.23 km², Perímetro: 5.7 km" in msg.body
    assert "Área URL: file://" in msg.body


def test_aggregated_new_incidents_at_threshold(settings, wanted):
    settings.summary_threshold = 3
    records = [fire(id=str(i)) for i in range(6)] + [fire(id="X", area="Oleiros")]
    result = detect(records, State(), wanted, T0)
    messages = MessageRenderer(settings).render(result, [], total_active=7)
    assert messages[0].title == "Novos incidentes (7)"
    assert messages[0].body == ("Oleiros: 1 (X)\n"
                                "Sertã: 6 (0, 1, 2, 3, 4)\n"
                                "Total ativo no alvo: 7")
    assert not any(m.title.startswith("Novo em") for m in messages)
    # status lines are still sent per incident
    assert sum(m.title.startswith("Novo →") for m in messages) == 7


def test_below_threshold_sends_individually(settings, wanted):
    settings.summary_threshold = 3
    result = detect([fire(id="1"), fire(id="2")], State(), wanted, T0)
    titles = [m.title for m in MessageRenderer(settings).render(result, [], 2)]
    assert titles.count("Novo em Sertã — Mato") == 2


def test_conclusion_message_shows_duration(settings, wanted):
    st = State()
    detect([fire(status="Em Curso")], st, wanted, T0)
    result = detect([fire(status="Conclusão")], st, wanted, T0 + timedelta(hours=2, minutes=5))
    (msg,) = MessageRenderer(settings).render(result, [], 1)
    assert msg.title == "Em Curso → Conclusão — Sertã"
    assert "Duração: 2h05m" in msg.body
    assert "white_check_mark" in msg.tags.split(",")
    assert msg.priority == "3"


def test_reactivation_message(settings):
    record = fire(status="Em Curso")
    event = StatusTransition("serta", "Sertã", "A", record, previous="Em Vigilância",
                             current="Em Curso", reactivated=True)
    msg = MessageRenderer(settings).status_transition(event)
    assert msg.title == "Reativado: Em Vigilância → Em Curso — Sertã"
    assert "repeat" in msg.tags.split(",")
    assert msg.priority == "2"


def test_resource_changes_grouped_per_incident(settings, wanted):
    st = State()
    detect([fire()], st, wanted, T0)
    result = detect([fire(man=5, aerial=1)], st, wanted, T0 + timedelta(minutes=1))
    (msg,) = MessageRenderer(settings).render(result, [], 1)
    assert msg.title == "Meios atualizados — Sertã"
    assert "Alterações: man 0→5, air 0→1" in msg.body
    assert "fire_engine" in msg.tags.split(",")


def test_annotation_removed_message(settings, wanted):
    st = State()
    detect([fire(extra="EN2 cortada")], st, wanted, T0)
    result = detect([fire()], st, wanted, T0 + timedelta(minutes=1))
    (msg,) = MessageRenderer(settings).render(result, [], 1)
    assert msg.title == "Nota atualizada — Sertã"
    assert "Extra: (removido)" in msg.body


def test_summary_messages(settings, wanted):
    b = Breakdown(total=2, by_area=[("Sertã", 2)], by_nature=[("Mato", 2)], by_status=[])
    at = datetime(2025, 8, 1, 8, 0)
    result = detect([], State(), wanted, at)
    hourly, daily = MessageRenderer(settings).render(
        result, [HourlySummary(at, b), DailySummary(at, b)], 2)
    assert hourly.title == "Sumário horário (08:00)"
    assert hourly.body == "Ativos: 2\nConcelhos: Sertã: 2\nNatureza: Mato: 2\nEstados: (n/a)"
    assert "bar_chart" in hourly.tags
    assert daily.title == "Sumário diário (2025-08-01)"
    assert "calendar" in daily.tags


# --- transport ---

def test_notify_posts_utf8_headers(settings):
    session = FakeSession()
    notifier = Notifier(settings, session=session, clock=lambda: datetime(2025, 8, 1, 12, 0))
    ok = notifier.notify("Novo em Sertã", "ID: 1\nFogos: https://fogos.pt/fogo/1", "fire", "4",
                         "https://maps.example/x")
    assert ok
    (call,) = session.calls
    assert call["url"] == "https://ntfy.sh/test-topic"
    assert call["data"] == "ID: 1\nFogos: https://fogos.pt/fogo/1".encode("utf-8")
    assert header(call, "Title") == "Novo em Sertã"
    assert header(call, "Priority") == "4"
    assert header(call, "Click") == "https://maps.example/x"
    assert "Abrir Fogos" in header(call, "Actions")


def test_quiet_hours_cap_priority_and_tag(settings):
    settings.quiet_hours = "23-7"
    session = FakeSession()
    notifier = Notifier(settings, session=session, clock=lambda: datetime(2025, 8, 1, 2, 0))
    assert notifier.notify("t", "b", "fire", "5")
    call = session.calls[0]
    assert header(call, "Priority") == "3"
    assert header(call, "Tags") == "fire,zzz"


def test_quiet_hours_keep_lower_priority(settings):
    settings.quiet_hours = "23-7"
    session = FakeSession()
    notifier = Notifier(settings, session=session, clock=lambda: datetime(2025, 8, 1, 2, 0))
    notifier.notify("t", "b", "", "2")
    assert header(session.calls[0], "Priority") == "2"


def test_no_topic_means_no_post(settings):
    settings.topic = " "
    session = FakeSession()
    assert not Notifier(settings, session=session).notify("t", "b")
    assert session.calls == []


def test_dry_run_logs_instead_of_posting(settings, caplog):
    settings.dry_run = True
    session = FakeSession()
    with caplog.at_level("INFO"):
        assert Notifier(settings, session=session).notify("Título", "corpo")
    assert session.calls == []
    assert "Título" in caplog.text


def test_http_error_returns_false(settings):
    session = FakeSession(response=FakeResponse(500, "boom"))
    assert not Notifier(settings, session=session).notify("t", "b")


def test_transport_error_returns_false(settings):
    session = FakeSession(error=requests.ConnectionError("down"))
    assert not Notifier(settings, session=session).notify("t", "b")


def test_send_all_counts_accepted(settings):
    session = FakeSession()
    notifier = Notifier(settings, session=session, clock=lambda: T0)
    messages = [Message("a", "1", "fire", "3"), Message("b", "2", "fire", "3")]
    assert notifier.send_all(messages) == 2
    assert [header(c, "Title") for c in session.calls] == ["a", "b"]
