from __future__ import annotations

import asyncio

from regionctl.core.config import get_settings
from regionctl.core.logging import configure_logging
from regionctl.services.bootstrap import build_lease, build_reconciler


async def _main() -> None:
    # Run the reconcile loop headless, without the ops API.
    configure_logging()
    settings = get_settings()
    reconciler = build_reconciler(settings)
    if settings.audit_backend == "sql" and settings.database_url.startswith("sqlite"):
        from regionctl.persistence.db import init_models

        await init_models()
    if settings.restore_decision_on_start:
        await reconciler.restore()
    reconciler.attach_lease(await build_lease(settings))
    await reconciler.run_forever()


if __name__ == "__main__":
    asyncio.run(_main())
