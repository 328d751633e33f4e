from tripchain_sdk.client import TripchainClient
from tripchain_sdk.models import ChainStatus, ImportResult

__all__ = ["ChainStatus", "ImportResult", "TripchainClient"]
