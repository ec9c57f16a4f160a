from __future__ import annotations

import logging

import pytest
from fastapi.testclient import TestClient
from opentelemetry.trace import SpanKind, StatusCode

from rolldice import server
from rolldice.config import AppConfig


def _fixed_rolls(monkeypatch, *values: int) -> None:
    rolls = iter(values)
    monkeypatch.setattr(server.random, "randint", lambda low, high: next(rolls))


def _roll_counts(reader) -> dict[int, int]:
    counts: dict[int, int] = {}
    data = reader.get_metrics_data()
    if data is None:
        return counts
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                if metric.name != "dice.rolls":
                    continue
                for point in metric.data.data_points:
                    counts[point.attributes["roll.value"]] = point.value
    return counts


@pytest.fixture
def client(span_exporter, metric_reader):
    return TestClient(server.create_root_app(AppConfig()))


def test_roll_for_player(client, span_exporter, monkeypatch, caplog):
    _fixed_rolls(monkeypatch, 4)

    with caplog.at_level(logging.INFO, logger="rolldice.server"):
        response = client.get("/rolldice/alice")

    assert response.status_code == 200
    assert response.text == "4\n"
    assert "alice is rolling the dice" in caplog.text

    spans = span_exporter.get_finished_spans()
    roll = next(span for span in spans if span.name == "roll")
    request = next(span for span in spans if span.kind == SpanKind.SERVER)
    assert roll.attributes["roll.value"] == 4
    assert roll.parent is not None
    assert roll.parent.span_id == request.context.span_id
    assert request.attributes["http.route"] == "/rolldice/{player}"


def test_anonymous_roll(client, monkeypatch, caplog):
    _fixed_rolls(monkeypatch, 6)

    with caplog.at_level(logging.INFO, logger="rolldice.server"):
        response = client.get("/rolldice/")

    assert response.text == "6\n"
    assert "Anonymous player is rolling the dice" in caplog.text
    record = next(r for r in caplog.records if r.name == "rolldice.server")
    assert record.result == 6


def test_rolls_are_counted_by_value(client, metric_reader, monkeypatch):
    _fixed_rolls(monkeypatch, 2, 5, 2)

    for player in ("a", "b", "c"):
        assert client.get(f"/rolldice/{player}").status_code == 200

    assert _roll_counts(metric_reader) == {2: 2, 5: 1}


def test_roll_values_are_in_range(client):
    for _ in range(20):
        value = int(client.get("/rolldice/").text)
        assert 1 <= value <= 6


def test_healthz_is_not_traced(client, span_exporter):
    response = client.get("/healthz")

    assert response.json() == {"status": "ok"}
    assert span_exporter.get_finished_spans() == ()


def test_failed_roll_marks_span_as_error(span_exporter, monkeypatch):
    def broken(low, high):
        raise RuntimeError("die fell off the table")

    monkeypatch.setattr(server.random, "randint", broken)

    with pytest.raises(RuntimeError):
        server.roll_die("bob")

    (span,) = span_exporter.get_finished_spans()
    assert span.name == "roll"
    assert span.status.status_code == StatusCode.ERROR
    assert span.events[0].name == "exception"
