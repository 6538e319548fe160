from __future__ import annotations

import argparse
import asyncio
import json

from regionctl.core.config import load_controller_config
from regionctl.core.logging import configure_logging
from regionctl.services.probe import EndpointHealthProbe


async def probe_all(timeout_s: float | None) -> list[dict]:
    config = load_controller_config()
    probe = EndpointHealthProbe()
    timeout = timeout_s or config.probe_timeout_s
    samples = await asyncio.gather(*(probe.probe(region, timeout) for region in config.regions))
    return [sample.to_dict() for sample in samples]


def main() -> int:
    parser = argparse.ArgumentParser(description="Probe every configured region once and print the samples.")
    parser.add_argument("--timeout", type=float, default=None, help="Per-probe timeout in seconds")
    args = parser.parse_args()
    configure_logging()
    results = asyncio.run(probe_all(args.timeout))
    print(json.dumps(results, indent=2))
    return 0 if all(item["success"] for item in results) else 1


if __name__ == "__main__":
    raise SystemExit(main())
