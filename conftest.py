from datetime import datetime, timedelta, timezone

import pytest

from tracking.errors import TokenNotFoundError
from tracking.models import Call, Caller, Chain, MarketData, TrackerSettings
from utils.db import CallStore

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

SOL_MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"
SOL_MINT_2 = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
BSC_TOKEN = "0x" + "ab" * 20


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class FakeOracle:
    """Answers from a per-address table; an Exception value is raised."""

    def __init__(self):
        self.answers = {}
        self.requests = []

    def set(self, address, market_cap=None, error=None, **fields):
        if error is not None:
            self.answers[address] = error
        else:
            self.answers[address] = MarketData(market_cap_usd=market_cap, **fields)

    async def fetch(self, chain, address):
        self.requests.append((chain, address))
        answer = self.answers.get(address)
        if answer is None:
            raise TokenNotFoundError(f"no pair for {address}")
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def aclose(self):
        pass


class RecordingNotifier:
    def __init__(self, ok=True):
        self.ok = ok
        self.messages = []
        self.images = []

    async def send(self, text, image_url=None):
        self.messages.append(text)
        self.images.append(image_url)
        return self.ok

    async def aclose(self):
        pass


def make_call(**overrides) -> Call:
    fields = {
        "chain": Chain.SOL,
        "address": SOL_MINT,
        "caller": Caller(external_id="42", display_name="alice"),
        "entry_value": 100_000.0,
        "last_value": 100_000.0,
        "peak_value": 100_000.0,
        "next_check_at": T0,
        "created_at": T0,
        "expires_at": T0 + timedelta(days=7),
    }
    fields.update(overrides)
    return Call(**fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = CallStore(str(tmp_path / "calls.db"))
    s.init_db()
    return s


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings():
    return TrackerSettings(
        low_milestone_ladder=[2, 4, 6],
        high_milestone_ladder=[10],
        drawdown_fraction=0.5,
        batch_size=50,
        max_workers=4,
    )
