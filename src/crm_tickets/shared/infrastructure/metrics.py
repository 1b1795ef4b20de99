"""
Grafana OTLP Metrics Exporter
==============================

Pushes the counters of each escalation sweep to Grafana Cloud as OTLP/HTTP
JSON gauges, one data point per sweep:

- escalation_sweep_tickets_scanned
- escalation_sweep_rules_matched
- escalation_sweep_escalations_executed
- escalation_sweep_failures
- escalation_sweep_pages
"""

import time
from typing import Any, Dict, List, Optional

import httpx

from crm_tickets.config import settings
from crm_tickets.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

OTLP_METRICS_PATH = "/otlp/v1/metrics"


def _attribute(key: str, value: Any) -> Dict[str, Any]:
    return {"key": key, "value": {"stringValue": str(value)}}


class GrafanaOTLPExporter:
    """
    Best-effort metrics push; an unconfigured exporter is a no-op and every
    failure is logged and reported as ``False``.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        host = host or settings.grafana_host or ""
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._timeout = timeout
        self._http_client = http_client
        self._enabled = bool(host and self._api_key and self._instance_id)
        self._url = host if host.rstrip("/").endswith(OTLP_METRICS_PATH) else host.rstrip("/") + OTLP_METRICS_PATH

        if self._enabled:
            logger.info("Grafana metrics export enabled", extra={"url": self._url})

    def is_enabled(self) -> bool:
        return self._enabled

    def build_payload(
        self,
        gauges: Dict[str, int],
        attributes: Optional[Dict[str, str]] = None,
        timestamp_ns: Optional[int] = None
    ) -> dict:
        timestamp_ns = timestamp_ns or time.time_ns()
        point_attributes = [_attribute("service", settings.app_name)]
        point_attributes += [_attribute(k, v) for k, v in (attributes or {}).items()]

        metrics: List[dict] = []
        for name, value in gauges.items():
            metrics.append({
                "name": name,
                "unit": "1",
                "gauge": {
                    "dataPoints": [
                        {"asInt": int(value), "timeUnixNano": timestamp_ns, "attributes": point_attributes}
                    ]
                }
            })

        resource = [
            _attribute("service.name", settings.app_name),
            _attribute("service.version", settings.app_version),
            _attribute("deployment.environment", settings.environment),
        ]
        return {"resourceMetrics": [{"resource": {"attributes": resource}, "scopeMetrics": [{"metrics": metrics}]}]}

    async def _post(self, payload: dict) -> httpx.Response:
        auth = httpx.BasicAuth(str(self._instance_id), str(self._api_key))
        headers = {"X-Grafana-Org-Id": str(self._instance_id)}
        if self._http_client is not None:
            return await self._http_client.post(self._url, json=payload, auth=auth, headers=headers)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.post(self._url, json=payload, auth=auth, headers=headers)

    async def export_gauges(self, gauges: Dict[str, int], attributes: Optional[Dict[str, str]] = None) -> bool:
        if not self._enabled:
            return False

        try:
            response = await self._post(self.build_payload(gauges, attributes))
        except httpx.HTTPError as e:
            logger.error("Metrics export failed", extra={"error": str(e)})
            return False

        if response.status_code not in (200, 202):
            logger.warning(
                "Metrics export rejected",
                extra={"status_code": response.status_code, "response": response.text[:500]}
            )
            return False
        return True

    async def export_sweep_metrics(self, counters: Dict[str, int]) -> bool:
        """Export the counters of one escalation sweep."""
        gauges = {f"escalation_sweep_{key}": value for key, value in counters.items()}
        return await self.export_gauges(gauges, {"operation": "escalation_sweep"})


_grafana_exporter: Optional[GrafanaOTLPExporter] = None


def get_grafana_exporter() -> GrafanaOTLPExporter:
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter
