# app/services/adapters/http_client.py
import base64
import json
import logging
import time
from urllib.parse import urlencode

import requests

logger = logging.getLogger(__name__)

NON_RETRYABLE_STATUS = {400, 401, 403, 404, 422}
MAX_BACKOFF_SECONDS = 60
# OAuth2 tokens are refreshed this many seconds before they actually expire.
TOKEN_EXPIRY_MARGIN = 300


class WholesalerHttpClient:
    """
    Synchronous HTTP client for one wholesaler API.

    This client handles:
    - URL construction from endpoint templates, path and query parameters.
    - Authentication (api_key, bearer, basic, oauth2 client credentials, custom headers).
    - Retries with exponential backoff for 5xx, 429 and network errors.
    - A standardized response format: {"data", "status_code"} or {"error", "status_code"}.
    """

    def __init__(self, api_config, job_id="WholesalerSync", max_retries=3, timeout=30.0, rate_limiter=None, sleep=time.sleep):
        self.config = api_config
        self.max_retries = max(1, max_retries or 1)
        self.timeout = timeout
        self.rate_limiter = rate_limiter
        self._sleep = sleep
        self.request_count = 0
        self.log_prefix = f"WholesalerClient ({job_id})"
        self._token = None
        self._token_expires_at = 0

    def request(self, method, endpoint_template, path_params=None, query_params=None, body_payload=None, timeout=None):
        """
        Makes an authenticated request to the wholesaler API.

        Args:
            method (str): The HTTP method (e.g., 'GET', 'POST').
            endpoint_template (str): Path relative to the base URL, or an absolute URL, with
                optional placeholders (e.g., '/tours/{code}').
            path_params (dict, optional): Values formatted into the endpoint.
            query_params (dict, optional): Query string parameters; None values are dropped.
            body_payload (dict, optional): JSON payload for POST/PUT requests.
            timeout (float, optional): Overrides the configured request timeout.

        Returns:
            dict: A standardized dictionary containing 'status_code' and either 'data' or 'error'.
        """
        http_method = method.upper()
        try:
            request_url = self._build_url(endpoint_template, path_params, query_params)
            return self._make_request_with_retry(http_method, request_url, body_payload, timeout or self.timeout)
        except ValueError as ve:
            logger.error(f"{self.log_prefix}: Value error during request setup: {ve}")
            return {"error": str(ve), "status_code": 400}
        except Exception as e:
            logger.exception(f"{self.log_prefix}: Unexpected internal error in HTTP client")
            return {"error": f"An unexpected internal error occurred: {e}", "status_code": 500}

    def _build_url(self, endpoint_template, path_params, query_params):
        final_endpoint = endpoint_template or ''
        if path_params:
            try:
                final_endpoint = final_endpoint.format(**path_params)
            except KeyError as e:
                raise ValueError(f"Missing path parameter {e} for endpoint '{endpoint_template}'")

        if final_endpoint.startswith(('http://', 'https://')):
            full_url = final_endpoint
        else:
            base_url = (self.config.api_base_url or '').rstrip('/')
            if final_endpoint and not final_endpoint.startswith('/'):
                final_endpoint = f"/{final_endpoint}"
            full_url = f"{base_url}{final_endpoint}"

        if query_params:
            filtered_params = {k: (str(v).lower() if isinstance(v, bool) else v) for k, v in query_params.items() if v is not None}
            if filtered_params:
                separator = '&' if '?' in full_url else '?'
                full_url += f"{separator}{urlencode(filtered_params, doseq=True)}"
        return full_url

    def _make_request_with_retry(self, method, url, payload, timeout):
        last_error = None
        token_refreshed = False
        attempt = 0
        while attempt < self.max_retries:
            attempt += 1
            try:
                return self._execute_request(method, url, payload, timeout, attempt)

            except requests.exceptions.HTTPError as http_err:
                status_code = http_err.response.status_code
                last_error = http_err
                if status_code == 401 and self.config.auth_type == 'oauth2' and not token_refreshed:
                    logger.warning(f"{self.log_prefix}: Received 401 Unauthorized. Refreshing OAuth token and retrying...")
                    self._token = None
                    token_refreshed = True
                    attempt -= 1
                    continue
                if status_code in NON_RETRYABLE_STATUS:
                    return self._format_error_response(http_err)
                if status_code == 429 and self.rate_limiter is not None:
                    self.rate_limiter.backoff()
                    continue

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as net_err:
                last_error = net_err

            except requests.exceptions.RequestException as req_err:
                return self._format_error_response(req_err)

            if attempt < self.max_retries:
                delay = min(MAX_BACKOFF_SECONDS, 2 ** attempt)
                logger.warning(f"{self.log_prefix}: Attempt {attempt}/{self.max_retries} failed ({last_error}). Retrying in {delay}s.")
                self._sleep(delay)

        return self._format_error_response(last_error)

    def _execute_request(self, method, url, payload, timeout, attempt=1):
        retry_prefix = f"(Attempt {attempt}) " if attempt > 1 else ""
        if self.rate_limiter is not None:
            self.rate_limiter.wait()
        self._log_request(method, url, payload)

        self.request_count += 1
        response = requests.request(
            method=method,
            url=url,
            json=payload,
            headers=self._get_headers(),
            auth=self._get_basic_auth(),
            timeout=timeout,
        )

        self._log_response(response, retry_prefix)
        response.raise_for_status()
        if self.rate_limiter is not None:
            self.rate_limiter.reset_backoff()

        try:
            data = response.json()
        except ValueError:
            # Success status with a non-JSON body (e.g., 204 No Content)
            data = response.text if response.text else None
        return {"data": data, "status_code": response.status_code}

    # --- authentication ---

    def _credentials(self):
        return self.config.auth_credentials or {}

    def _get_headers(self):
        headers = {'Accept': 'application/json'}
        creds = self._credentials()
        auth_type = self.config.auth_type or 'none'

        if auth_type == 'api_key':
            header_name = self.config.auth_header_name or creds.get('header_name') or 'X-API-Key'
            headers[header_name] = creds.get('api_key', '')
        elif auth_type == 'bearer':
            headers['Authorization'] = f"Bearer {creds.get('token', '')}"
        elif auth_type == 'oauth2':
            headers['Authorization'] = f"Bearer {self._get_oauth_token()}"
        elif auth_type == 'custom':
            headers.update(creds.get('headers') or {})
        return headers

    def _get_basic_auth(self):
        if self.config.auth_type != 'basic':
            return None
        creds = self._credentials()
        return (creds.get('username', ''), creds.get('password', ''))

    def _get_oauth_token(self):
        if self._token and time.time() < self._token_expires_at:
            return self._token

        creds = self._credentials()
        token_url = creds.get('token_url')
        if not token_url:
            raise ValueError("OAuth2 auth requires 'token_url' in auth_credentials.")

        logger.info(f"{self.log_prefix}: Requesting OAuth2 access token.")
        basic = base64.b64encode(f"{creds.get('client_id', '')}:{creds.get('client_secret', '')}".encode()).decode()
        response = requests.post(
            token_url,
            data={'grant_type': 'client_credentials', 'scope': creds.get('scope', '')},
            headers={'Authorization': f"Basic {basic}", 'Accept': 'application/json'},
            timeout=self.timeout,
        )
        response.raise_for_status()
        body = response.json()
        self._token = body['access_token']
        expires_in = int(body.get('expires_in', 3600))
        self._token_expires_at = time.time() + max(0, expires_in - TOKEN_EXPIRY_MARGIN)
        return self._token

    # --- logging ---

    def _log_request(self, method, url, payload):
        logger.info(f"{self.log_prefix}: Request -> {method} {url}")
        if payload:
            try:
                logger.debug(f"{self.log_prefix}: Body -> {json.dumps(payload, indent=2, ensure_ascii=False)}")
            except TypeError:
                logger.debug(f"{self.log_prefix}: Body -> {payload} (Not JSON serializable for logging)")

    def _log_response(self, response, retry_prefix=""):
        logger.info(f"{self.log_prefix}: {retry_prefix}Response <- Status {response.status_code} {response.reason}")
        if response.status_code >= 400 or (response.text and len(response.text) < 1000):
            logger.debug(f"{self.log_prefix}: Response Body -> {response.text[:1000]}")

    def _format_error_response(self, error):
        """Creates a standardized dictionary from an exception."""
        if isinstance(error, requests.exceptions.HTTPError):
            status_code = error.response.status_code
            try:
                error_json = error.response.json()
                message = error_json.get("message", error_json.get("error", "An HTTP error occurred.")) if isinstance(error_json, dict) else str(error_json)
            except ValueError:
                message = error.response.text[:200] or "An HTTP error occurred with no response body."
            logger.error(f"{self.log_prefix}: HTTP {status_code} error: {message}")
            return {"error": message, "status_code": status_code}

        elif isinstance(error, requests.exceptions.Timeout):
            logger.error(f"{self.log_prefix}: Request timed out.")
            return {"error": "The request timed out.", "status_code": 504}

        elif isinstance(error, requests.exceptions.ConnectionError):
            logger.error(f"{self.log_prefix}: A connection error occurred.")
            return {"error": "A network connection error occurred.", "status_code": 503}

        else:
            logger.error(f"{self.log_prefix}: An unexpected error occurred: {error}")
            return {"error": "An unexpected error occurred.", "status_code": 500}
