from __future__ import annotations

import json
from dataclasses import replace

from botocore.exceptions import ClientError
import httpx
import pytest

from regionctl.core.config import Settings
from regionctl.core.errors import ApplyFailureError, ConfigError
from regionctl.domain.state import RoutingDecision
from regionctl.providers.routing.factory import get_routing_backend
from regionctl.providers.routing.global_accelerator import GlobalAcceleratorBackend
from regionctl.providers.routing.memory import InMemoryRoutingBackend
from regionctl.providers.routing.route53 import Route53WeightedRecordBackend
from regionctl.providers.routing.webhook import WebhookRoutingBackend
from regionctl.services.alerts import SIGNATURE_HEADER, compute_signature
from regionctl.tests.utils.fakes import DUBLIN, MILAN, make_config


DUBLIN_PRIMARY = RoutingDecision.binary("dublin", ["milan", "dublin"])


class StubRoute53:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[dict] = []
        self._error = error

    def change_resource_record_sets(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        return {"ChangeInfo": {"Id": "/change/C123", "Status": "PENDING"}}


class StubGlobalAccelerator:
    def __init__(self, groups: list[dict], page_size: int = 1) -> None:
        self.groups = groups
        self.page_size = page_size
        self.updates: list[tuple[str, float]] = []

    def list_endpoint_groups(self, ListenerArn: str, NextToken: str | None = None):
        start = int(NextToken or 0)
        page = self.groups[start : start + self.page_size]
        response = {"EndpointGroups": page}
        if start + self.page_size < len(self.groups):
            response["NextToken"] = str(start + self.page_size)
        return response

    def update_endpoint_group(self, EndpointGroupArn: str, TrafficDialPercentage: float):
        self.updates.append((EndpointGroupArn, TrafficDialPercentage))
        return {}


def _group(region: str, dial: float) -> dict:
    return {
        "EndpointGroupArn": f"arn:aws:globalaccelerator::1:eg/{region}",
        "EndpointGroupRegion": region,
        "TrafficDialPercentage": dial,
    }


@pytest.mark.asyncio
async def test_route53_upserts_one_weighted_record_per_region() -> None:
    client = StubRoute53()
    backend = Route53WeightedRecordBackend(
        hosted_zone_id="Z123",
        record_name="api.example.com",
        regions=(MILAN, DUBLIN),
        client=client,
    )
    await backend.apply(DUBLIN_PRIMARY)

    assert len(client.calls) == 1
    call = client.calls[0]
    assert call["HostedZoneId"] == "Z123"
    records = {change["ResourceRecordSet"]["SetIdentifier"]: change for change in call["ChangeBatch"]["Changes"]}
    assert set(records) == {"milan", "dublin"}
    assert all(change["Action"] == "UPSERT" for change in records.values())
    assert records["dublin"]["ResourceRecordSet"]["Weight"] == 100
    assert records["milan"]["ResourceRecordSet"]["Weight"] == 0
    assert records["dublin"]["ResourceRecordSet"]["TTL"] == 30
    assert records["dublin"]["ResourceRecordSet"]["ResourceRecords"] == [{"Value": "dublin.example.internal"}]


@pytest.mark.asyncio
async def test_route53_client_error_maps_to_apply_failure() -> None:
    error = ClientError({"Error": {"Code": "Throttling", "Message": "Rate exceeded"}}, "ChangeResourceRecordSets")
    backend = Route53WeightedRecordBackend(
        hosted_zone_id="Z123",
        record_name="api.example.com",
        regions=(MILAN, DUBLIN),
        client=StubRoute53(error=error),
    )
    with pytest.raises(ApplyFailureError) as exc_info:
        await backend.apply(DUBLIN_PRIMARY)
    assert exc_info.value.backend == "route53"


def test_route53_rejects_unknown_region() -> None:
    backend = Route53WeightedRecordBackend(
        hosted_zone_id="Z123",
        record_name="api.example.com",
        regions=(MILAN,),
        client=StubRoute53(),
    )
    with pytest.raises(ApplyFailureError):
        backend.build_change_batch(DUBLIN_PRIMARY)


AWS_MILAN = replace(MILAN, aws_region="eu-south-1")
AWS_DUBLIN = replace(DUBLIN, aws_region="eu-west-1")


@pytest.mark.asyncio
async def test_global_accelerator_raises_primary_dial_first_and_skips_unchanged() -> None:
    client = StubGlobalAccelerator(
        [_group("eu-south-1", 100.0), _group("eu-west-1", 0.0), _group("eu-central-1", 0.0)]
    )
    backend = GlobalAcceleratorBackend(listener_arn="arn:listener", regions=(AWS_MILAN, AWS_DUBLIN), client=client)
    await backend.apply(DUBLIN_PRIMARY)
    assert client.updates == [
        ("arn:aws:globalaccelerator::1:eg/eu-west-1", 100.0),
        ("arn:aws:globalaccelerator::1:eg/eu-south-1", 0.0),
    ]

    client.groups = [_group("eu-south-1", 0.0), _group("eu-west-1", 100.0)]
    client.updates.clear()
    await backend.apply(DUBLIN_PRIMARY)
    assert client.updates == []


@pytest.mark.asyncio
async def test_global_accelerator_missing_endpoint_group_fails() -> None:
    client = StubGlobalAccelerator([_group("eu-south-1", 100.0)])
    backend = GlobalAcceleratorBackend(listener_arn="arn:listener", regions=(AWS_MILAN, AWS_DUBLIN), client=client)
    with pytest.raises(ApplyFailureError):
        await backend.apply(DUBLIN_PRIMARY)
    assert client.updates == []


@pytest.mark.asyncio
async def test_global_accelerator_ignores_groups_named_after_region_ids() -> None:
    # Endpoint groups are keyed by AWS region codes, never by controller region ids.
    client = StubGlobalAccelerator([_group("milan", 100.0), _group("dublin", 0.0)])
    backend = GlobalAcceleratorBackend(listener_arn="arn:listener", regions=(AWS_MILAN, AWS_DUBLIN), client=client)
    with pytest.raises(ApplyFailureError, match="dublin"):
        await backend.apply(DUBLIN_PRIMARY)
    assert client.updates == []


def test_global_accelerator_group_region_falls_back_to_region_id() -> None:
    backend = GlobalAcceleratorBackend(listener_arn="arn:listener", regions=(AWS_MILAN, DUBLIN), client=object())
    assert backend.group_region("milan") == "eu-south-1"
    assert backend.group_region("dublin") == "dublin"
    with pytest.raises(ApplyFailureError):
        backend.group_region("paris")


def test_global_accelerator_rejects_regions_sharing_an_endpoint_group() -> None:
    with pytest.raises(ConfigError):
        GlobalAcceleratorBackend(
            listener_arn="arn:listener",
            regions=(AWS_MILAN, replace(DUBLIN, aws_region="eu-south-1")),
            client=object(),
        )


def test_factory_passes_aws_regions_to_global_accelerator() -> None:
    config = make_config(regions=(AWS_MILAN, AWS_DUBLIN))
    backend = get_routing_backend(
        config,
        Settings(routing_backend="global_accelerator", global_accelerator_listener_arn="arn:listener"),
    )
    assert isinstance(backend, GlobalAcceleratorBackend)
    assert backend.group_region("dublin") == "eu-west-1"


@pytest.mark.asyncio
async def test_webhook_backend_posts_signed_decision() -> None:
    received: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(request)
        return httpx.Response(204)

    backend = WebhookRoutingBackend(
        "https://router.example.internal/decisions",
        secret="s3cret",
        transport=httpx.MockTransport(handler),
    )
    await backend.apply(DUBLIN_PRIMARY)

    assert len(received) == 1
    body = received[0].content
    assert json.loads(body) == {"primary": "dublin", "weights": {"dublin": 100, "milan": 0}}
    assert received[0].headers[SIGNATURE_HEADER] == compute_signature(body, "s3cret")


@pytest.mark.asyncio
async def test_webhook_backend_rejection_maps_to_apply_failure() -> None:
    backend = WebhookRoutingBackend(
        "https://router.example.internal/decisions",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    with pytest.raises(ApplyFailureError):
        await backend.apply(DUBLIN_PRIMARY)


@pytest.mark.asyncio
async def test_memory_backend_injected_failures() -> None:
    backend = InMemoryRoutingBackend()
    backend.fail_next(1)
    with pytest.raises(ApplyFailureError):
        await backend.apply(DUBLIN_PRIMARY)
    assert backend.current is None
    await backend.apply(DUBLIN_PRIMARY)
    assert backend.current == DUBLIN_PRIMARY
    assert len(backend.calls) == 2


def test_factory_selects_backend_from_settings() -> None:
    config = make_config()
    assert isinstance(get_routing_backend(config, Settings(routing_backend="memory")), InMemoryRoutingBackend)
    webhook = get_routing_backend(
        config,
        Settings(routing_backend="webhook", routing_webhook_url="https://router.example.internal"),
    )
    assert isinstance(webhook, WebhookRoutingBackend)


def test_factory_rejects_incomplete_or_unknown_backend() -> None:
    config = make_config()
    with pytest.raises(ConfigError):
        get_routing_backend(config, Settings(routing_backend="route53"))
    with pytest.raises(ConfigError):
        get_routing_backend(config, Settings(routing_backend="carrier-pigeon"))
