"""ledger_dash: a local mirror of an Up Bank account with analytics on top."""
from .api import app

__all__ = ["app"]
