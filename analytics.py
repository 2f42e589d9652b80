"""
Borrowing analytics over the active loans.

Both reports read the ``loan`` collection, which only holds loans that are
still out. Returned books therefore do not count towards either report.
"""
import logging
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from pymongo.database import Database

from database import as_utc

logger = logging.getLogger(__name__)


def top_borrowers(db: Database, limit: int = 3) -> List[dict]:
    """Users holding the most active loans, highest first.

    Ties keep a stable order by user id. Groups whose user has since been
    deleted are dropped, so fewer than ``limit`` entries may come back.
    """
    pipeline = [
        {"$group": {"_id": "$user_id", "count": {"$sum": 1}}},
        {"$sort": {"count": -1, "_id": 1}},
        {"$limit": limit},
    ]
    groups = list(db["loan"].aggregate(pipeline))
    users = {u["_id"]: u for u in db["libraryuser"].find({"_id": {"$in": [g["_id"] for g in groups]}})}

    result = []
    for group in groups:
        user = users.get(group["_id"])
        if user is None:
            logger.warning("Loans reference missing user %s", group["_id"])
            continue
        result.append({
            "_id": str(user["_id"]),
            "name": user["name"],
            "email": user["email"],
            "borrowedBooksCount": group["count"],
        })
    return result


def local_day(value: datetime) -> date:
    return as_utc(value).astimezone().date()


def daily_borrow_counts(db: Database, days: int = 7, today: Optional[date] = None) -> List[dict]:
    """Loans started on each of the last ``days`` local calendar days, oldest first.

    Every day is present, with a zero count when nothing was borrowed.
    """
    today = today or datetime.now().date()
    first_day = today - timedelta(days=days - 1)
    # naive UTC, the form stored dates are compared in
    since = datetime.combine(first_day, time.min).astimezone(timezone.utc).replace(tzinfo=None)

    counts = Counter()
    for loan in db["loan"].find({"borrowed_at": {"$gte": since}}, {"borrowed_at": 1}):
        counts[local_day(loan["borrowed_at"])] += 1

    return [
        {"date": day.isoformat(), "count": counts.get(day, 0)}
        for day in (first_day + timedelta(days=offset) for offset in range(days))
    ]
