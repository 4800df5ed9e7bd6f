from datetime import datetime

from savingsplan.app.exceptions import RateUnavailable
from savingsplan.app.models.models import Goal, Asset

# Start of a tracked month used across the service tests
MONTH = "2025-03"
MONTH_START = datetime(2025, 3, 1, 9, 0)


class StaticRateFetcher:
    """Rate fetcher backed by a dict; flip `available` off to simulate an outage"""

    def __init__(self, rates=None):
        self.rates = dict(rates or {})
        self.available = True
        self.calls = 0

    def __call__(self, from_currency, to_currency):
        self.calls += 1
        if not self.available:
            raise RateUnavailable("rate source offline")
        key = (from_currency.upper(), to_currency.upper())
        if key not in self.rates:
            raise RateUnavailable(f"no rate for {from_currency}->{to_currency}")
        return self.rates[key]


def make_goal(db_session, name, target_amount, deadline, currency="USD"):
    goal = Goal(name=name, target_amount=target_amount, currency=currency, deadline=deadline)
    db_session.add(goal)
    db_session.commit()
    db_session.refresh(goal)
    return goal

def make_asset(db_session, name="Savings Account", currency="USD"):
    asset = Asset(name=name, currency=currency)
    db_session.add(asset)
    db_session.commit()
    db_session.refresh(asset)
    return asset
