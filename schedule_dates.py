from datetime import date, datetime, timedelta

# ============================================================
# DATE HELPER FUNCTIONS (calendar days, no working-day calendar)
# ============================================================

DATE_FORMAT = '%Y-%m-%d'


def to_date(s):
    if not s:
        return None
    if isinstance(s, datetime):
        return s.date()
    if isinstance(s, date):
        return s
    try:
        return datetime.strptime(s, DATE_FORMAT).date()
    except (ValueError, TypeError):
        return None


def fmt(d):
    return d.strftime(DATE_FORMAT)


def add_days(d, n):
    return d + timedelta(days=int(n or 0))


def day_span(start, end):
    """Days from start to end; a task starting and ending on the same day spans 0."""
    a = to_date(start)
    b = to_date(end)
    if not a or not b:
        return None
    return (b - a).days
