from __future__ import annotations

from mediasync.models.server import Server  # noqa: F401
from mediasync.models.job import BackgroundJob  # noqa: F401
from mediasync.models.job_result import JobResult  # noqa: F401
from mediasync.models.media import (  # noqa: F401
    Activity,
    Item,
    Library,
    MediaUser,
    PlaybackSession,
)
