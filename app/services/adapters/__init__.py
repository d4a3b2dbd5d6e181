# app/services/adapters/__init__.py
from .base import BaseAdapter, SyncResult, PeriodsResult, ItinerariesResult, AckResult
from .factory import AdapterFactory
from .generic_rest import GenericRestAdapter
from .http_client import WholesalerHttpClient
