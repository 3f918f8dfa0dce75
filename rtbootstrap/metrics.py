# -*- coding: utf-8 -*-
"""Prometheus metrics for supervised processes, exported by the health listener."""
from __future__ import annotations

from typing import Optional, Tuple

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest


class SupervisorMetrics:
    """
    Per-supervisor metric set on a private registry, so several supervisors
    (tests) never collide on the global default registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry(auto_describe=True)
        self.starts = Counter(
            "rtbootstrap_process_starts_total",
            "Process start attempts",
            ["process"],
            registry=self.registry,
        )
        self.restarts = Counter(
            "rtbootstrap_process_restarts_total",
            "Restarts performed by the restart policy",
            ["process"],
            registry=self.registry,
        )
        self.exits = Counter(
            "rtbootstrap_process_exits_total",
            "Process exits by outcome",
            ["process", "outcome"],
            registry=self.registry,
        )
        self.running = Gauge(
            "rtbootstrap_process_running",
            "Process in Running state (1/0)",
            ["process"],
            registry=self.registry,
        )
        self.healthy = Gauge(
            "rtbootstrap_healthy",
            "All required processes are running (1/0)",
            registry=self.registry,
        )

    def exposition(self) -> Tuple[bytes, str]:
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
