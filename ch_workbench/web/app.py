"""NiceGUI web application bootstrap for ClickHouse Workbench."""

from nicegui import app, run, ui

import ch_workbench.web.state as state
from ch_workbench.manager import ConnectionManager
from ch_workbench.logging_config import get_logger

# Import pages so their @ui.page decorators register routes
import ch_workbench.web.pages.main  # noqa: F401

logger = get_logger(__name__)


@app.on_startup
async def _startup():
    state.manager = ConnectionManager.from_env(io_bound=run.io_bound)
    await state.manager.start()
    logger.info("Workbench started")


@app.on_shutdown
async def _shutdown():
    if state.manager:
        await state.manager.close()
        state.manager = None
    logger.info("Workbench stopped")


def start(port: int = 8080):
    """Run the NiceGUI web server."""
    ui.run(port=port, title='ClickHouse Workbench', reload=False)
