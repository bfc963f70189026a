"""Tests for application startup wiring."""

from unittest.mock import patch

import pytest

from revledger.core.config import settings
from revledger.main import app, lifespan
from revledger.services.revenue.backfill import RevenueBackfillService
from revledger.services.revenue.sync import RevenueSyncService


class TestLifespan:
    """Test what the lifespan puts on app.state."""

    @pytest.mark.asyncio
    async def test_services_wired_into_state(self) -> None:
        with (
            patch.object(settings, "DB_AUTO_CREATE", False),
            patch.object(settings, "SENTRY_DSN", None),
        ):
            async with lifespan(app):
                assert isinstance(app.state.revenue_sync, RevenueSyncService)
                assert isinstance(app.state.revenue_backfill, RevenueBackfillService)
                assert not hasattr(app.state, "invoice_events")
