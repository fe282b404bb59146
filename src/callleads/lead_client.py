import httpx
import logging

from callleads.circuit_breaker import CircuitBreaker
from callleads.models import DEFAULT_TENANT, Lead

logger = logging.getLogger(__name__)


class LeadServiceClient:
    """HTTP LeadStore backed by the lead service.

    Every call goes through a circuit breaker: after 3 consecutive failures
    the service is skipped for 60s.  Failures never raise; they return None
    (or False for call-log updates) and the engine records the write as failed.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        tenant_id: str = DEFAULT_TENANT,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.tenant_id = tenant_id
        self.timeout = timeout
        self._circuit = CircuitBreaker(
            failure_threshold=3,
            cooldown_seconds=60.0,
            label="lead service",
        )
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json", "X-Tenant-Id": tenant_id}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def _post(self, path: str, payload: dict, label: str) -> dict | None:
        if not self._circuit.should_try():
            logger.warning("Lead service circuit breaker open, skipping %s", label)
            return None
        try:
            resp = await self._client.post(path, json=payload)
            if resp.status_code >= 400:
                logger.error("%s returned %d: %s", label, resp.status_code, resp.text[:500])
            resp.raise_for_status()
            self._circuit.record_success()
            return resp.json()
        except Exception as e:
            self._circuit.record_failure()
            logger.error("%s failed: %s", label, e)
            return None

    @staticmethod
    def _lead_from(body: dict | None) -> Lead | None:
        if not isinstance(body, dict) or not isinstance(body.get("lead"), dict):
            return None
        return Lead.from_dict(body["lead"])

    async def find_or_create_lead(self, phone: str, final_outcome: str | None = None) -> Lead | None:
        payload = {"phone": phone}
        if final_outcome:
            payload["finalOutcome"] = final_outcome
        body = await self._post("/leads/find-or-create", payload, "find_or_create_lead")
        return self._lead_from(body)

    async def add_call_event(
        self,
        *,
        phone: str,
        direction: str,
        outcome: str,
        timestamp_ms: int,
        duration_in_seconds: int | None = None,
    ) -> Lead | None:
        body = await self._post(
            "/leads/call-events",
            {
                "phone": phone,
                "direction": direction,
                "outcome": outcome,
                "timestamp": timestamp_ms,
                "durationInSeconds": duration_in_seconds,
            },
            "add_call_event",
        )
        return self._lead_from(body)

    async def add_final_call_event(
        self,
        *,
        phone: str,
        direction: str,
        outcome: str,
        timestamp_ms: int,
        duration_in_seconds: int | None = None,
    ) -> Lead | None:
        body = await self._post(
            "/leads/final-call-events",
            {
                "phone": phone,
                "direction": direction,
                "outcome": outcome,
                "timestamp": timestamp_ms,
                "durationInSeconds": duration_in_seconds,
            },
            "add_final_call_event",
        )
        return self._lead_from(body)

    async def update_call_from_call_log(
        self,
        *,
        phone: str,
        direction: str,
        timestamp_ms: int,
        duration_in_seconds: int,
        final_outcome: str,
    ) -> bool:
        body = await self._post(
            "/calls/call-log-updates",
            {
                "phone": phone,
                "direction": direction,
                "timestamp": timestamp_ms,
                "durationInSeconds": duration_in_seconds,
                "finalOutcome": final_outcome,
            },
            "update_call_from_call_log",
        )
        if not isinstance(body, dict):
            return False
        return bool(body.get("updated", False))
