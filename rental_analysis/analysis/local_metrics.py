"""Network-free KPI analysis used as the offline fallback narrative.

Records are the same camelCase mappings sent to the remote service:
transactions carry ``type`` and ``amount``; reservations carry ``status``,
``startDate``, ``endDate``, ``cabinCount`` and ``totalAmount``. Malformed
fields are skipped rather than raised on.
"""

import calendar
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from rental_analysis.models.data_models import ReservationStatus, TransactionType


SECONDS_PER_DAY = 86400

_BOOKED_STATUSES = {ReservationStatus.CONFIRMED.value, ReservationStatus.COMPLETED.value}
_NON_OCCUPYING_STATUSES = {ReservationStatus.CANCELLED.value, ReservationStatus.INFORMATION.value}


@dataclass(frozen=True)
class FinancialBalance:
    total_income: float
    total_expenses: float
    net_profit: float
    profit_margin: float


@dataclass(frozen=True)
class LocalKPIs:
    """Rounded KPIs as shown in the narrative."""
    occupancy_rate: int
    adr: int
    avg_stay_duration: float
    revpar: int
    balance: FinancialBalance


def _parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a record date.

    Accepts ``date``/``datetime`` objects and ISO-8601 strings (a trailing
    ``Z`` is allowed). Returns naive datetimes; None when unparseable.
    """
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text).replace(tzinfo=None)
        except ValueError:
            return None
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def _cabin_count(reservation: Dict[str, Any]) -> int:
    count = _as_number(reservation.get("cabinCount"))
    if count is None or count < 0:
        return 1
    return int(count)


def _text(value: Any) -> str:
    return str(value.value if hasattr(value, "value") else value or "").lower()


def _records(items: Optional[Iterable[Any]]) -> List[Dict[str, Any]]:
    return [item for item in (items or []) if isinstance(item, dict)]


def _stay_days(reservation: Dict[str, Any]) -> Optional[int]:
    start = _parse_datetime(reservation.get("startDate"))
    end = _parse_datetime(reservation.get("endDate"))
    if start is None or end is None:
        return None
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


def calculate_monthly_occupancy(
    reservations: Iterable[Dict[str, Any]],
    total_cabins: int,
    today: Optional[date] = None
) -> float:
    """
    Occupancy percentage (0-100) for the month containing ``today``.

    Overlap days are counted inclusively and weighted by ``cabinCount``;
    cancelled and information-only reservations do not occupy cabins.
    """
    reservations = _records(reservations)
    if total_cabins <= 0 or not reservations:
        return 0.0

    today = today or date.today()
    days_in_month = calendar.monthrange(today.year, today.month)[1]
    month_start = datetime(today.year, today.month, 1)
    month_end = datetime(today.year, today.month, days_in_month)

    occupied_nights = 0
    for reservation in reservations:
        if _text(reservation.get("status")) in _NON_OCCUPYING_STATUSES:
            continue
        start = _parse_datetime(reservation.get("startDate"))
        end = _parse_datetime(reservation.get("endDate"))
        if start is None or end is None:
            continue

        overlap_start = max(start, month_start)
        overlap_end = min(end, month_end)
        if overlap_start >= overlap_end:
            continue
        overlap_days = max(1, math.floor((overlap_end - overlap_start).total_seconds() / SECONDS_PER_DAY + 1))
        occupied_nights += overlap_days * _cabin_count(reservation)

    occupancy = occupied_nights / (days_in_month * total_cabins) * 100
    return min(100.0, max(0.0, occupancy))


def calculate_financial_balance(transactions: Iterable[Dict[str, Any]]) -> FinancialBalance:
    """Income, expenses, net profit and margin; margin is 0 unless both profit and income are positive."""
    total_income = 0.0
    total_expenses = 0.0
    for transaction in _records(transactions):
        amount = _as_number(transaction.get("amount"))
        if amount is None:
            continue
        kind = _text(transaction.get("type"))
        if kind == TransactionType.INCOME.value:
            total_income += amount
        elif kind == TransactionType.EXPENSE.value:
            total_expenses += amount

    net_profit = total_income - total_expenses
    profit_margin = net_profit / total_income * 100 if total_income > 0 and net_profit > 0 else 0.0
    return FinancialBalance(total_income, total_expenses, net_profit, profit_margin)


def calculate_adr(reservations: Iterable[Dict[str, Any]]) -> float:
    """Average daily rate: booked revenue per booked cabin-night."""
    revenue = 0.0
    nights = 0
    booked = [r for r in _records(reservations) if _text(r.get("status")) in _BOOKED_STATUSES]
    for reservation in booked:
        revenue += _as_number(reservation.get("totalAmount")) or 0.0
        days = _stay_days(reservation)
        if days is not None:
            nights += days * _cabin_count(reservation)
    return revenue / nights if nights > 0 else 0.0


def calculate_average_stay_duration(reservations: Iterable[Dict[str, Any]]) -> float:
    durations = [
        days
        for days in (_stay_days(r) for r in _records(reservations) if _text(r.get("status")) in _BOOKED_STATUSES)
        if days is not None
    ]
    if not durations:
        return 0.0
    return sum(durations) / len(durations)


def calculate_revpar(occupancy_rate: float, adr: float) -> float:
    return occupancy_rate / 100 * adr


def calculate_all_metrics(
    transactions: Iterable[Dict[str, Any]],
    reservations: Iterable[Dict[str, Any]],
    total_cabins: int,
    today: Optional[date] = None
) -> LocalKPIs:
    occupancy = calculate_monthly_occupancy(reservations, total_cabins, today)
    adr = calculate_adr(reservations)
    return LocalKPIs(
        occupancy_rate=round(occupancy),
        adr=round(adr),
        avg_stay_duration=round(calculate_average_stay_duration(reservations), 1),
        revpar=round(calculate_revpar(occupancy, adr)),
        balance=calculate_financial_balance(transactions),
    )


def _occupancy_assessment(rate: float) -> str:
    if rate >= 70:
        return "Excellent occupancy, indicating strong demand and good utilization."
    if rate >= 50:
        return "Moderate occupancy with room to grow bookings."
    return "Occupancy is below target; consider strategies to increase bookings."


def _margin_assessment(margin: float) -> str:
    if margin >= 20:
        return "Healthy, sustainable profit margin."
    if margin >= 10:
        return "Acceptable profit margin with room for optimization."
    return "Tight profit margin; costs and pricing need attention."


def _adr_assessment(adr: float) -> str:
    if adr >= 100:
        return "Strong average rate, reflecting perceived value."
    if adr >= 50:
        return "Average rate is competitive for the market."
    return "Average rate could be optimized to improve revenue."


def _stay_assessment(days: float) -> str:
    if days >= 3:
        return "Optimal length of stay, maximizing revenue per booking."
    if days >= 2:
        return "Adequate length of stay; consider promotions for longer stays."
    return "Short stays; there is an opportunity to encourage longer visits."


def _revpar_assessment(revpar: float) -> str:
    if revpar >= 70:
        return "Excellent RevPAR, indicating strong overall performance."
    if revpar >= 40:
        return "Moderate RevPAR with potential for improvement."
    return "RevPAR needs attention to optimize revenue."


def build_recommendations(kpis: LocalKPIs) -> List[str]:
    recommendations = []
    if kpis.occupancy_rate < 60:
        recommendations.append("Run digital marketing campaigns to increase occupancy")
        recommendations.append("Consider discounts for last-minute bookings")
    if kpis.balance.profit_margin < 15:
        recommendations.append("Review the cost structure and cut non-essential expenses")
        recommendations.append("Evaluate demand-based price adjustments")
    if kpis.avg_stay_duration < 2.5:
        recommendations.append("Create extended-stay packages with discounts")
        recommendations.append("Offer additional amenities for longer stays")
    if kpis.adr < 75 and kpis.occupancy_rate > 70:
        recommendations.append("High demand leaves room to raise the average rate")
    return recommendations


def _zero_activity_narrative() -> str:
    return "\n".join([
        "**Local KPI Analysis**",
        "",
        "## Executive Summary",
        "No transactions or reservations were recorded, so there is no activity to analyze yet.",
        "",
        "## Key Metrics",
        "- **Occupancy:** 0%",
        "- **ADR:** $0",
        "- **Average Stay:** 0 days",
        "- **RevPAR:** $0",
        "- **Net Profit:** $0.00",
        "",
        "---",
        "*This analysis was generated locally from your current business data.*",
    ])


def generate_local_analysis(
    transactions: Optional[Iterable[Dict[str, Any]]],
    reservations: Optional[Iterable[Dict[str, Any]]],
    total_cabins: int,
    today: Optional[date] = None
) -> str:
    """
    Render a markdown KPI narrative from the business records.

    Args:
        transactions: Financial records
        reservations: Reservation records
        total_cabins: Number of rentable cabins (occupancy capacity)
        today: Reference date for the current month (defaults to today)

    Returns:
        Markdown narrative; a zero-activity narrative for empty input
    """
    transactions = _records(transactions)
    reservations = _records(reservations)
    if not transactions and not reservations:
        return _zero_activity_narrative()

    kpis = calculate_all_metrics(transactions, reservations, total_cabins, today)
    balance = kpis.balance
    occupancy_text = _occupancy_assessment(kpis.occupancy_rate)
    margin_text = _margin_assessment(balance.profit_margin)
    recommendations = build_recommendations(kpis) or [
        "Current indicators are solid; focus on keeping them consistent"
    ]

    lines = [
        "**Local KPI Analysis**",
        "",
        "## Executive Summary",
        f"{occupancy_text} {margin_text} Current RevPAR of ${kpis.revpar} reflects overall performance.",
        "",
        "## Key Metrics",
        f"- **Occupancy:** {kpis.occupancy_rate}% - {occupancy_text}",
        f"- **ADR:** ${kpis.adr} - {_adr_assessment(kpis.adr)}",
        f"- **Average Stay:** {kpis.avg_stay_duration} days - {_stay_assessment(kpis.avg_stay_duration)}",
        f"- **RevPAR:** ${kpis.revpar} - {_revpar_assessment(kpis.revpar)}",
        f"- **Profit Margin:** {balance.profit_margin:.1f}% - {margin_text}",
        f"- **Income / Expenses / Net:** ${balance.total_income:,.2f} / "
        f"${balance.total_expenses:,.2f} / ${balance.net_profit:,.2f}",
        "",
        "## Recommendations",
        *[f"- {item}" for item in recommendations],
        "",
        "## Next Steps",
        "1. Monitor weekly occupancy and revenue trends",
        "2. Tune pricing to seasonal demand",
        "3. Act on the priority recommendations above",
        "4. Set monthly targets based on current performance",
        "",
        "---",
        "*This analysis was generated locally from your current business data.*",
    ]
    return "\n".join(lines)
