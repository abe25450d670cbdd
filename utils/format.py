import html
from datetime import datetime


def _esc(value):
    return html.escape(str(value))


def fmt_usd(value):
    try:
        n = float(value)
    except (TypeError, ValueError):
        return "N/A"
    abs_n = abs(n)
    if abs_n >= 1_000_000_000:
        return f"${n/1_000_000_000:.2f}B"
    if abs_n >= 1_000_000:
        return f"${n/1_000_000:.2f}M"
    if abs_n >= 1_000:
        return f"${n/1_000:.1f}K"
    return f"${n:.0f}"


def shorten_address(address):
    address = str(address or "")
    if len(address) <= 8:
        return address or "Token"
    return f"{address[:4]}…{address[-4:]}"


def human_duration(start: datetime, end: datetime) -> str:
    hours = max(0.0, (end - start).total_seconds() / 3600)
    if hours < 1:
        minutes = max(1, round(hours * 60))
        return f"{minutes} minute{'' if minutes == 1 else 's'}"
    if hours < 48:
        hrs = round(hours)
        return f"{hrs} hour{'' if hrs == 1 else 's'}"
    days = round(hours / 24)
    return f"{days} days"


def _tag(call):
    return f"${_esc(call.ticker)}" if call.ticker else _esc(shorten_address(call.address))


def _by(call):
    name = call.caller.display_name or call.caller.external_id
    return f"@{_esc(str(name).lstrip('@'))}"


def format_call_announcement(call, market=None) -> str:
    lines = [
        f"📣 New call: <b>{_tag(call)}</b> on {_esc(call.chain.value.upper())} by {_by(call)}",
        "",
        f"💰 MC: <b>{fmt_usd(call.entry_value)}</b>",
    ]
    if market is not None and market.liquidity_usd:
        lines.append(f"💧 Liquidity: <b>{fmt_usd(market.liquidity_usd)}</b>")
    if market is not None and market.chart_url:
        lines.append(f"📈 <a href=\"{_esc(market.chart_url)}\">Chart</a>")
    lines.append(f"<code>{_esc(call.address)}</code>")
    return "\n".join(lines)


def format_milestone_alert(call, threshold: float, multiple: float, now_value: float, now: datetime) -> str:
    rockets = "🚀" * min(12, max(4, round(multiple * 2)))
    head = "🌕" if threshold >= 10 else rockets
    return (
        f"{head} <b>{_tag(call)}</b> hit <b>{threshold:g}x</b> "
        f"(now <b>x{multiple:.2f}</b>) in <b>{human_duration(call.created_at, now)}</b> since call\n\n"
        f"📞 MC when called: <b>{fmt_usd(call.entry_value)}</b> by {_by(call)}\n"
        f"🏆 MC now: <b>{fmt_usd(now_value)}</b>\n"
        f"<code>{_esc(call.address)}</code>"
    )


def format_dump_alert(call, drawdown: float, now_value: float) -> str:
    return (
        f"⚠️ <b>{_tag(call)}</b> dumped <b>{drawdown * 100:.0f}%</b> from peak\n\n"
        f"Peak MC: <b>{fmt_usd(call.peak_value)}</b> → now <b>{fmt_usd(now_value)}</b>\n"
        f"called by {_by(call)}\n"
        f"<code>{_esc(call.address)}</code>"
    )


def format_leaderboard(entries) -> str:
    if not entries:
        return "No callers yet."
    lines = ["🏅 <b>Top Callers</b>", ""]
    for i, e in enumerate(entries, start=1):
        who = _esc(e.display_name or e.caller_id)
        lines.append(
            f"{i}. {who} — Best {e.best_multiple:.2f}× • Avg {e.avg_multiple:.2f}× • {e.total_calls} calls"
        )
    return "\n".join(lines)
