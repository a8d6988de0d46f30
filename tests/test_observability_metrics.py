from storefront.observability.metrics import (
    get_counter_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    reset_metrics,
    set_gauge,
    timed,
)


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("orders_created_total")
    increment_counter("orders_created_total", amount=2, labels={"payment_method": "paypal"})
    set_gauge("revenue_window_total", 120.5)
    observe_latency("email_send_ms", 100, labels={"type": "order_confirmation"})
    observe_latency("email_send_ms", 50, labels={"type": "order_confirmation"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["orders_created_total"]
    assert len(counters) == 2

    gauges = snapshot["gauges"]["revenue_window_total"]
    assert gauges[0]["value"] == 120.5

    hist = snapshot["histograms"]["email_send_ms"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100
    assert hist["avg"] == 75


def test_counter_lookup_is_label_order_independent():
    increment_counter("emails_total", labels={"type": "new_ticket", "status": "sent"})
    assert get_counter_value("emails_total", {"status": "sent", "type": "new_ticket"}) == 1
    assert get_counter_value("emails_total") == 0


def test_timed_records_even_when_block_raises():
    try:
        with timed("checkout_ms"):
            raise RuntimeError("gateway down")
    except RuntimeError:
        pass
    assert get_metrics_snapshot()["histograms"]["checkout_ms"][0]["stats"]["count"] == 1


def test_events_are_kept_in_order():
    record_event("order_paid", {"order_id": 1})
    record_event("order_paid", {"order_id": 2})
    events = get_metrics_snapshot()["events"]
    assert [event["payload"]["order_id"] for event in events] == [1, 2]
