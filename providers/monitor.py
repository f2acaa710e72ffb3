"""
Provider: Monitor — registers monitoring for a finished workflow's change set.

Configs are kept in memory and echoed back with defaults filled in. Only the
most recent ``max_configs`` are retained; older ones are evicted first.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

import config
from models.schemas import utcnow
from providers.base import CapabilityProvider

log = logging.getLogger(__name__)

DEFAULT_METRICS = ["response_time", "error_rate", "throughput"]
DEFAULT_ALERTS = {"error_rate": 0.05, "response_time_ms": 1000}
DEFAULT_MAX_CONFIGS = 500


class MonitorProvider(CapabilityProvider):
    name = "monitor"

    def __init__(self, dashboard_url: str | None = None, max_configs: int = DEFAULT_MAX_CONFIGS):
        self.dashboard_url = dashboard_url if dashboard_url is not None else config.MONITORING_DASHBOARD_URL
        self.max_configs = max_configs
        self._configs: OrderedDict[str, dict] = OrderedDict()

    async def setup_monitoring(self, workflow_id: str, parameters: dict | None = None, *, token=None) -> dict:
        parameters = parameters or {}
        alerts = {**DEFAULT_ALERTS, **(parameters.get("alerts") or {})}
        monitoring = {
            "workflow_id": workflow_id,
            "metrics": list(parameters.get("metrics") or DEFAULT_METRICS),
            "alerts": alerts,
            "dashboard": f"{self.dashboard_url.rstrip('/')}/{workflow_id}" if self.dashboard_url else None,
            "parameters": parameters,
            "created_at": utcnow().isoformat(),
        }
        self._configs[workflow_id] = monitoring
        self._configs.move_to_end(workflow_id)
        while len(self._configs) > self.max_configs:
            evicted, _ = self._configs.popitem(last=False)
            log.debug("Dropped monitoring config for %s", evicted)
        log.info("Monitoring configured for %s (%d metrics)", workflow_id, len(monitoring["metrics"]))
        return monitoring

    def get_config(self, workflow_id: str) -> dict | None:
        return self._configs.get(workflow_id)

    def monitored(self) -> list[str]:
        return list(self._configs)

    async def cleanup(self) -> None:
        self._configs.clear()
        await super().cleanup()
