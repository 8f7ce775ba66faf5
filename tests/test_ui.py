"""Smoke test: the Textual window mounts and keys toggle parameters."""

import pytest

from osc_tally.config import TallyConfig
from osc_tally.engine import TallyEngine
from osc_tally.ui import ConnectionPanel, TallyApp

from tests.conftest import ADDRESSES, RecordingTransport


@pytest.mark.asyncio
async def test_app_toggles_and_shows_receivers():
    """Keys 1-4 flip tally parameters; custom port target is listed."""
    config = TallyConfig.model_validate(
        {"osc": {"use_custom_port": True, "send_port": 9000, "parameters": ADDRESSES}}
    )
    engine = TallyEngine(config, transport=RecordingTransport())
    app = TallyApp(engine)

    try:
        async with app.run_test() as pilot:
            await pilot.pause()
            assert engine.is_started

            await pilot.press("1")
            await pilot.press("2")
            await pilot.pause()

            params = engine.get_status()["parameters"]
            assert params["Preview"] is True
            assert params["Program"] is True
            assert params["Standby"] is False

            panel = app.query_one("#connections", ConnectionPanel)
            assert panel.status["destinations"] == ["127.0.0.1:9000"]
    finally:
        engine.stop()


@pytest.mark.asyncio
async def test_app_reports_no_receivers():
    """An empty destination set is flagged."""
    engine = TallyEngine(TallyConfig(), transport=RecordingTransport())
    app = TallyApp(engine, manage_engine=False)

    async with app.run_test() as pilot:
        await pilot.pause()
        panel = app.query_one("#connections", ConnectionPanel)
        assert panel.status["no_receivers"] is True
