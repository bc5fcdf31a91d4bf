"""missions-ledger: Gold/XP ledger and daily settlement engine."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("missions-ledger")
except PackageNotFoundError:
    __version__ = "0.0.0"
