from datetime import timedelta

from conftest import T0, make_call
from tracking.models import Caller, LeaderboardEntry, MarketData
from utils.format import (
    fmt_usd,
    format_call_announcement,
    format_dump_alert,
    format_leaderboard,
    format_milestone_alert,
    human_duration,
    shorten_address,
)


def test_fmt_usd():
    assert fmt_usd(1_250_000_000) == "$1.25B"
    assert fmt_usd(450_000) == "$450.0K"
    assert fmt_usd(2_500_000) == "$2.50M"
    assert fmt_usd(None) == "N/A"


def test_human_duration():
    assert human_duration(T0, T0 + timedelta(seconds=20)) == "1 minute"
    assert human_duration(T0, T0 + timedelta(minutes=45)) == "45 minutes"
    assert human_duration(T0, T0 + timedelta(hours=5)) == "5 hours"
    assert human_duration(T0, T0 + timedelta(days=3)) == "3 days"


def test_shorten_address():
    assert shorten_address("7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr") == "7GCi…W2hr"


def test_milestone_alert_escapes_html():
    call = make_call(ticker="<POP>", caller=Caller(external_id="1", display_name="@bob&co"))
    text = format_milestone_alert(call, 2, 2.5, 250_000, T0 + timedelta(hours=3))
    assert "$&lt;POP&gt;" in text
    assert "<b>2x</b>" in text
    assert "x2.50" in text
    assert "3 hours" in text
    assert "@bob&amp;co" in text
    assert "$100.0K" in text


def test_dump_alert():
    call = make_call(peak_value=450_000)
    text = format_dump_alert(call, 0.5556, 200_000)
    assert "dumped <b>56%</b>" in text
    assert "$450.0K" in text
    assert "$200.0K" in text


def test_leaderboard_text():
    entries = [
        LeaderboardEntry(caller_id="1", display_name="ann", total_calls=3, best_multiple=5, avg_multiple=4),
    ]
    text = format_leaderboard(entries)
    assert "1. ann" in text
    assert "Best 5.00×" in text
    assert format_leaderboard([]) == "No callers yet."


def test_call_announcement():
    call = make_call(ticker="POP")
    market = MarketData(
        market_cap_usd=100_000,
        liquidity_usd=25_000,
        chart_url="https://dexscreener.com/solana/abc?x=1&y=2",
    )
    text = format_call_announcement(call, market)
    assert "<b>$POP</b> on SOL by @alice" in text
    assert "$100.0K" in text
    assert "$25.0K" in text
    assert 'href="https://dexscreener.com/solana/abc?x=1&amp;y=2"' in text
    assert f"<code>{call.address}</code>" in text


def test_call_announcement_without_market():
    text = format_call_announcement(make_call(entry_value=None, ticker=None))
    assert "N/A" in text
    assert "Liquidity" not in text
    assert "7GCi…W2hr" in text
