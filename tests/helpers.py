from datetime import datetime, timedelta
from app.core.clock import Clock
from app.core.pipeline_def import PipelineDefinition, SourceConfig


class FakeClock(Clock):
    """Time only moves when sleep()/advance() is called; hooks fire at set offsets."""

    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.start = start
        self.current = start
        self.mono = 0.0
        self.hooks = []

    def now(self):
        return self.current

    def monotonic(self):
        return self.mono

    def elapsed(self) -> float:
        return (self.current - self.start).total_seconds()

    def at(self, seconds, fn):
        self.hooks.append((seconds, fn))

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)
        self.mono += seconds
        due = [h for h in self.hooks if h[0] <= self.elapsed()]
        self.hooks = [h for h in self.hooks if h[0] > self.elapsed()]
        for _, fn in due:
            fn()

    def sleep(self, seconds):
        self.advance(seconds)


def make_definition(**overrides) -> PipelineDefinition:
    data = {"name": "websocket-client", "source": SourceConfig(owner="example-org", repo="websocket-client", branch="main")}
    data.update(overrides)
    return PipelineDefinition(**data)
