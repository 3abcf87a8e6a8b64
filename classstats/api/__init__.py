"""API route package: imports all routers for main.py."""

from classstats.api.health import router as health_router  # noqa: F401
from classstats.api.events import router as events_router  # noqa: F401
from classstats.api.schedules import router as schedules_router  # noqa: F401
from classstats.api.stats import router as stats_router  # noqa: F401
