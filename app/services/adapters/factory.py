# app/services/adapters/factory.py
import logging

from flask import current_app

from app.models import WholesalerApiConfig
from app.services.rate_limiter import SyncRateLimiter
from .generic_rest import GenericRestAdapter
from .http_client import WholesalerHttpClient

logger = logging.getLogger(__name__)


class AdapterFactory:
    """Builds the adapter for a wholesaler. Unregistered wholesalers use the generic REST adapter."""

    _registry = {}

    @classmethod
    def register(cls, wholesaler_code, adapter_cls):
        cls._registry[wholesaler_code] = adapter_cls
        logger.info(f"Registered adapter {adapter_cls.__name__} for wholesaler '{wholesaler_code}'.")

    @classmethod
    def unregister(cls, wholesaler_code):
        cls._registry.pop(wholesaler_code, None)

    @classmethod
    def build_http_client(cls, api_config):
        return WholesalerHttpClient(
            api_config,
            job_id=f"wholesaler-{api_config.wholesaler_id}",
            max_retries=api_config.retry_attempts or current_app.config.get('HTTP_MAX_RETRIES', 3),
            timeout=api_config.request_timeout_seconds or current_app.config.get('HTTP_TIMEOUT_SECONDS', 30),
            rate_limiter=SyncRateLimiter(requests_per_minute=api_config.rate_limit_per_minute),
        )

    @classmethod
    def create(cls, api_config):
        code = api_config.wholesaler.code if api_config.wholesaler else None
        adapter_cls = cls._registry.get(code, GenericRestAdapter)
        return adapter_cls(api_config, cls.build_http_client(api_config))

    @classmethod
    def create_for_wholesaler(cls, wholesaler_id):
        api_config = WholesalerApiConfig.query.filter_by(wholesaler_id=wholesaler_id).first()
        if api_config is None:
            raise ValueError(f"No API config found for wholesaler {wholesaler_id}.")
        return cls.create(api_config)
