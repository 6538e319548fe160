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


class GlobalAcceleratorBackend:
    """Publish a decision as traffic dials on a Global Accelerator listener.

    Each controller region maps to the endpoint group whose
    ``EndpointGroupRegion`` equals the region's ``aws_region`` (or its id when
    no AWS region is configured). The weight becomes the group's
    ``TrafficDialPercentage``.
    """

    name = "global_accelerator"

    def __init__(
        self,
        *,
        listener_arn: str,
        regions: tuple[Region, ...],
        api_region: str = "us-west-2",
        client: Any | None = None,
    ) -> None:
        if not listener_arn:
            raise ConfigError("global_accelerator backend requires GLOBAL_ACCELERATOR_LISTENER_ARN")
        # Controller region id -> AWS region of its endpoint group.
        self._group_regions = {region.id: region.aws_region or region.id for region in regions}
        if len(set(self._group_regions.values())) != len(self._group_regions):
            raise ConfigError(f"Regions share an endpoint group region: {self._group_regions}")
        self._listener_arn = listener_arn
        self._api_region = api_region
        self._client = client

    def _get_client(self) -> Any:
        # Create the boto3 client lazily so tests can inject a stub.
        if self._client is not None:
            return self._client
        try:
            import boto3
        except Exception as exc:  # pragma: no cover - environment-specific import
            raise ConfigError("AWS SDK not available. Install boto3.") from exc
        self._client = boto3.client("globalaccelerator", region_name=self._api_region)
        return self._client

    async def _endpoint_groups(self, client: Any) -> dict[str, dict[str, Any]]:
        # Map endpoint group region -> group description for this listener.
        groups: dict[str, dict[str, Any]] = {}
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"ListenerArn": self._listener_arn}
            if token:
                kwargs["NextToken"] = token
            page = await asyncio.to_thread(client.list_endpoint_groups, **kwargs)
            for group in page.get("EndpointGroups", []):
                groups[str(group.get("EndpointGroupRegion"))] = group
            token = page.get("NextToken")
            if not token:
                return groups

    def group_region(self, region_id: str) -> str:
        # Resolve a controller region id to its endpoint group region.
        try:
            return self._group_regions[region_id]
        except KeyError as exc:
            raise ApplyFailureError(f"Decision references unknown region {region_id}", backend=self.name) from exc

    async def apply(self, decision: RoutingDecision) -> None:
        # Set one dial per endpoint group; groups already at their target are left alone.
        client = self._get_client()
        targets = {region_id: self.group_region(region_id) for region_id in decision.weights}
        start = time.monotonic()
        try:
            groups = await self._endpoint_groups(client)
            missing = sorted(region_id for region_id, group_region in targets.items() if group_region not in groups)
            if missing:
                raise ApplyFailureError(
                    f"No endpoint group on listener for regions {missing}",
                    backend=self.name,
                )
            # Raise dials before lowering others so traffic always has somewhere to go.
            ordered = sorted(decision.weights.items(), key=lambda item: (-item[1], item[0]))
            for region_id, weight in ordered:
                group = groups[targets[region_id]]
                current = float(group.get("TrafficDialPercentage", 100.0))
                if current == float(weight):
                    continue
                await asyncio.to_thread(
                    client.update_endpoint_group,
                    EndpointGroupArn=group["EndpointGroupArn"],
                    TrafficDialPercentage=float(weight),
                )
                logger.info(
                    "global_accelerator_dial_updated region=%s group_region=%s from=%s to=%s",
                    region_id,
                    targets[region_id],
                    current,
                    weight,
                )
        except (BotoCoreError, ClientError) as exc:
            record_external_call(
                integration="routing.global_accelerator",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise ApplyFailureError(f"Global Accelerator update failed: {exc}", backend=self.name) from exc
        record_external_call(
            integration="routing.global_accelerator",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
