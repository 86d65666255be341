"""
Prometheus Metrics

Counters and histograms for the relay and the client decoder. Exposed by the
API at /metrics.
"""

from prometheus_client import Counter, Histogram

relay_requests_total = Counter(
    "flowchat_relay_requests_total",
    "Relayed chat requests by mode and outcome",
    ["mode", "outcome"],  # mode: streaming | buffered
)

relay_upstream_duration_seconds = Histogram(
    "flowchat_relay_upstream_duration_seconds",
    "Time from upstream request to upstream close",
    ["mode"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
)

decoder_malformed_lines_total = Counter(
    "flowchat_decoder_malformed_lines_total",
    "Lines the chunk decoder could not interpret",
    ["framing"],
)
