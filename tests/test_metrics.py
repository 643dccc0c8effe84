import pytest

from forseti.metrics import (
    DEPARTURE_LOADING_DURATION,
    PARKINGS_LOADING_ERRORS,
    Counter,
    Gauge,
    Histogram,
    Registry,
    exponential_buckets,
)


def test_exponential_buckets():
    buckets = exponential_buckets(0.001, 1.5, 15)
    assert len(buckets) == 15
    assert buckets[0] == 0.001
    for low, high in zip(buckets, buckets[1:]):
        assert high / low == pytest.approx(1.5)


@pytest.mark.parametrize("start,factor,count", [(0.001, 1.5, 0), (0, 1.5, 15), (0.001, 1, 15)])
def test_exponential_buckets_rejects_bad_arguments(start, factor, count):
    with pytest.raises(ValueError):
        exponential_buckets(start, factor, count)


def test_counter_never_decreases():
    counter = Counter("loading_errors", "help", namespace="forseti", subsystem="departures")
    counter.inc()
    counter.inc()
    assert counter.value == 2
    with pytest.raises(ValueError):
        counter.inc(-1)
    assert counter.value == 2


def test_gauge_inc_dec_round_trip():
    gauge = Gauge("in_flight", "help", namespace="forseti", subsystem="http")
    gauge.inc()
    gauge.dec()
    assert gauge.value == 0
    assert gauge.name == "forseti_http_in_flight"


def test_histogram_cumulative_buckets():
    histogram = Histogram("load", "help", buckets=[0.001, 0.0015])
    histogram.observe(0.0012)
    text = "\n".join(histogram._render())
    assert 'load_bucket{le="0.001"} 0' in text
    assert 'load_bucket{le="0.0015"} 1' in text
    assert 'load_bucket{le="+Inf"} 1' in text
    assert histogram.sample_count() == 1
    assert histogram.sample_sum() == 0.0012


def test_histogram_labels_are_required():
    histogram = Histogram("durations_seconds", "help", label_names=("handler", "code"))
    with pytest.raises(ValueError):
        histogram.observe(0.1)
    histogram.observe(0.1, handler="status", code="200")
    assert histogram.sample_count(handler="status", code="200") == 1
    assert histogram.sample_count(handler="status", code="500") == 0


def test_registry_renders_and_rejects_duplicates():
    registry = Registry()
    registry.register(PARKINGS_LOADING_ERRORS)
    registry.register(DEPARTURE_LOADING_DURATION)
    with pytest.raises(ValueError):
        registry.register(Counter("loading_errors", "other", namespace="forseti", subsystem="parkings"))
    text = registry.render()
    assert "# TYPE forseti_parkings_loading_errors counter" in text
    assert "# HELP forseti_departures_load_durations_seconds http request latency distributions." in text
    bucket_lines = [line for line in text.splitlines() if "_bucket{" in line]
    assert len(bucket_lines) == len(DEPARTURE_LOADING_DURATION.buckets) + 1


def test_empty_registry_renders_nothing():
    assert Registry().render() == ""