from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from regionctl.core.errors import ApplyFailureError, ConfigError
from regionctl.domain.state import Region, RoutingDecision
from regionctl.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class Route53WeightedRecordBackend:
    """Publish a decision as one weighted CNAME record per region.

    Each region owns a record set under the shared name with
    ``SetIdentifier`` equal to its region id and ``Weight`` equal to its
    share of traffic. ``UPSERT`` makes repeated applies a no-op on Route53.
    """

    name = "route53"

    def __init__(
        self,
        *,
        hosted_zone_id: str,
        record_name: str,
        regions: tuple[Region, ...],
        ttl: int = 30,
        client: Any | None = None,
    ) -> None:
        if not hosted_zone_id or not record_name:
            raise ConfigError("route53 backend requires ROUTE53_HOSTED_ZONE_ID and ROUTE53_RECORD_NAME")
        self._hosted_zone_id = hosted_zone_id
        self._record_name = record_name
        self._regions = {region.id: region for region in regions}
        self._ttl = ttl
        self._client = client

    def _get_client(self) -> Any:
        # Create the boto3 client lazily so tests can inject a stub.
        if self._client is not None:
            return self._client
        try:
            import boto3
        except Exception as exc:  # pragma: no cover - environment-specific import
            raise ConfigError("AWS SDK not available. Install boto3.") from exc
        self._client = boto3.client("route53")
        return self._client

    def build_change_batch(self, decision: RoutingDecision) -> dict[str, Any]:
        # One UPSERT per configured region so the whole weight set lands atomically.
        changes: list[dict[str, Any]] = []
        for region_id, weight in decision.weights.items():
            region = self._regions.get(region_id)
            if region is None:
                raise ApplyFailureError(f"Decision references unknown region {region_id}", backend=self.name)
            changes.append(
                {
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": self._record_name,
                        "Type": "CNAME",
                        "SetIdentifier": region_id,
                        "Weight": int(weight),
                        "TTL": self._ttl,
                        "ResourceRecords": [{"Value": region.endpoint.host}],
                    },
                }
            )
        return {
            "Comment": f"regionctl primary={decision.primary}",
            "Changes": changes,
        }

    async def apply(self, decision: RoutingDecision) -> None:
        # boto3 is blocking; run the change in a worker thread.
        client = self._get_client()
        batch = self.build_change_batch(decision)
        start = time.monotonic()
        try:
            response = await asyncio.to_thread(
                client.change_resource_record_sets,
                HostedZoneId=self._hosted_zone_id,
                ChangeBatch=batch,
            )
        except (BotoCoreError, ClientError) as exc:
            record_external_call(
                integration="routing.route53",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ApplyFailureError(f"Route53 change rejected: {exc}", backend=self.name) from exc
        record_external_call(
            integration="routing.route53",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        change_info = (response or {}).get("ChangeInfo", {})
        logger.info(
            "route53_change_submitted zone=%s record=%s primary=%s change_id=%s",
            self._hosted_zone_id,
            self._record_name,
            decision.primary,
            change_info.get("Id"),
        )
