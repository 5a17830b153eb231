import json

from llm_relay.observability.event_log import RoutingEventLog


def test_events_are_buffered():
    log = RoutingEventLog(buffer_size=3)
    for i in range(5):
        log.log_event("retry", "router", attempt=i)

    assert len(log) == 3
    recent = log.get_recent()
    assert [e["metadata"]["attempt"] for e in recent] == [2, 3, 4]
    assert log.get_recent(limit=1)[0]["metadata"]["attempt"] == 4
    assert log.get_recent(limit=0) == []


def test_filter_and_summary():
    log = RoutingEventLog()
    log.log_event("routing_started", "router", request_id="r1")
    log.log_event("routing_succeeded", "router", duration_ms=12.5, request_id="r1")
    log.log_event("routing_started", "router", request_id="r2")

    started = log.get_recent(event_type="routing_started")
    assert [e["metadata"]["request_id"] for e in started] == ["r1", "r2"]
    assert log.get_recent(event_type="routing_succeeded")[0]["duration_ms"] == 12.5
    assert log.get_summary(hours=1) == {"routing_started": 2, "routing_succeeded": 1}


def test_events_written_as_jsonl(tmp_path):
    path = tmp_path / "logs" / "events.jsonl"
    log = RoutingEventLog(path=str(path))
    log.log_event("fallback", "router", failed="primary", next="secondary")
    log.log_event("routing_succeeded", "router", llm_used="secondary")

    lines = path.read_text().splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["event_type"] == "fallback"
    assert first["metadata"] == {"failed": "primary", "next": "secondary"}
