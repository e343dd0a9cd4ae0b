"""In-process metrics collector with Prometheus text exposition."""

from __future__ import annotations

from collections import defaultdict
from threading import Lock
import time
from typing import Dict, Tuple


_lock = Lock()
_started_at = time.time()

_http_requests_total: Dict[Tuple[str, str, str], int] = defaultdict(int)
_http_request_duration_sum: Dict[Tuple[str, str], float] = defaultdict(float)
_http_request_duration_count: Dict[Tuple[str, str], int] = defaultdict(int)
_quota_reservations_total: Dict[Tuple[str, str], int] = defaultdict(int)
_generations_settled_total: Dict[str, int] = defaultdict(int)
_subscriptions_total: Dict[str, int] = defaultdict(int)
_renewals_total: Dict[str, int] = defaultdict(int)
_channel_deliveries_total: Dict[Tuple[str, str], int] = defaultdict(int)
_posts_published_total = 0


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _normalize_label(value: str, *, fallback: str = "unknown") -> str:
    normalized = (value or "").strip()
    return normalized or fallback


def record_http_request(*, method: str, path: str, status_code: int, duration_seconds: float) -> None:
    status = str(status_code)
    method_label = method.upper()
    path_label = path or "unknown"
    duration = max(duration_seconds, 0.0)

    with _lock:
        _http_requests_total[(method_label, path_label, status)] += 1
        _http_request_duration_sum[(method_label, path_label)] += duration
        _http_request_duration_count[(method_label, path_label)] += 1


def record_quota_reservation(*, dimension: str, outcome: str) -> None:
    with _lock:
        _quota_reservations_total[(_normalize_label(dimension), _normalize_label(outcome))] += 1


def record_generation_settled(*, status: str) -> None:
    with _lock:
        _generations_settled_total[_normalize_label(status)] += 1


def record_subscription(*, outcome: str) -> None:
    with _lock:
        _subscriptions_total[_normalize_label(outcome)] += 1


def record_renewal(*, outcome: str) -> None:
    with _lock:
        _renewals_total[_normalize_label(outcome)] += 1


def record_channel_delivery(*, platform: str, status: str) -> None:
    with _lock:
        _channel_deliveries_total[(_normalize_label(platform), _normalize_label(status))] += 1


def record_post_published(count: int = 1) -> None:
    global _posts_published_total
    if count <= 0:
        return
    with _lock:
        _posts_published_total += int(count)


def _counter_block(name: str, help_text: str) -> list[str]:
    return [f"# HELP {name} {help_text}", f"# TYPE {name} counter"]


def render_prometheus_metrics(*, app_name: str, app_version: str, env: str) -> str:
    uptime = max(time.time() - _started_at, 0.0)

    with _lock:
        http_total = dict(_http_requests_total)
        duration_sum = dict(_http_request_duration_sum)
        duration_count = dict(_http_request_duration_count)
        quota_total = dict(_quota_reservations_total)
        settled_total = dict(_generations_settled_total)
        subscriptions_total = dict(_subscriptions_total)
        renewals_total = dict(_renewals_total)
        deliveries_total = dict(_channel_deliveries_total)
        posts_published_total = _posts_published_total

    lines = [
        "# HELP contentpilot_build_info Build metadata.",
        "# TYPE contentpilot_build_info gauge",
        (
            f'contentpilot_build_info{{app_name="{_escape_label(app_name)}",'
            f'version="{_escape_label(app_version)}",env="{_escape_label(env)}"}} 1'
        ),
        "# HELP contentpilot_process_uptime_seconds Process uptime in seconds.",
        "# TYPE contentpilot_process_uptime_seconds gauge",
        f"contentpilot_process_uptime_seconds {uptime:.6f}",
    ]

    lines.extend(_counter_block("contentpilot_http_requests_total", "Total HTTP requests."))
    for (method, path, status), value in sorted(http_total.items()):
        lines.append(
            (
                f'contentpilot_http_requests_total{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}",status="{_escape_label(status)}"}} {value}'
            )
        )

    lines.extend(
        [
            "# HELP contentpilot_http_request_duration_seconds HTTP request duration.",
            "# TYPE contentpilot_http_request_duration_seconds summary",
        ]
    )
    for (method, path), value in sorted(duration_sum.items()):
        lines.append(
            (
                f'contentpilot_http_request_duration_seconds_sum{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value:.6f}'
            )
        )
    for (method, path), value in sorted(duration_count.items()):
        lines.append(
            (
                f'contentpilot_http_request_duration_seconds_count{{method="{_escape_label(method)}",'
                f'path="{_escape_label(path)}"}} {value}'
            )
        )

    lines.extend(_counter_block("contentpilot_quota_reservations_total", "Quota reservation attempts."))
    for (dimension, outcome), value in sorted(quota_total.items()):
        lines.append(
            (
                f'contentpilot_quota_reservations_total{{dimension="{_escape_label(dimension)}",'
                f'outcome="{_escape_label(outcome)}"}} {value}'
            )
        )

    lines.extend(_counter_block("contentpilot_generations_settled_total", "Settled AI generations."))
    for status, value in sorted(settled_total.items()):
        lines.append(f'contentpilot_generations_settled_total{{status="{_escape_label(status)}"}} {value}')

    lines.extend(_counter_block("contentpilot_subscriptions_total", "Subscription attempts by outcome."))
    for outcome, value in sorted(subscriptions_total.items()):
        lines.append(f'contentpilot_subscriptions_total{{outcome="{_escape_label(outcome)}"}} {value}')

    lines.extend(_counter_block("contentpilot_renewals_total", "Renewal attempts by outcome."))
    for outcome, value in sorted(renewals_total.items()):
        lines.append(f'contentpilot_renewals_total{{outcome="{_escape_label(outcome)}"}} {value}')

    lines.extend(_counter_block("contentpilot_channel_deliveries_total", "Channel delivery attempts."))
    for (platform, status), value in sorted(deliveries_total.items()):
        lines.append(
            (
                f'contentpilot_channel_deliveries_total{{platform="{_escape_label(platform)}",'
                f'status="{_escape_label(status)}"}} {value}'
            )
        )

    lines.extend(_counter_block("contentpilot_posts_published_total", "Posts that reached published."))
    lines.append(f"contentpilot_posts_published_total {posts_published_total}")

    lines.append("")
    return "\n".join(lines)


def reset_metrics_for_tests() -> None:
    global _started_at, _posts_published_total
    with _lock:
        _http_requests_total.clear()
        _http_request_duration_sum.clear()
        _http_request_duration_count.clear()
        _quota_reservations_total.clear()
        _generations_settled_total.clear()
        _subscriptions_total.clear()
        _renewals_total.clear()
        _channel_deliveries_total.clear()
        _posts_published_total = 0
    _started_at = time.time()
