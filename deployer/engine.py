"""Process engine client: submits definitions and drives instances.

The pipeline only needs a narrow surface of the engine, captured by
``ProcessEngineClient``. ``ZeebeEngineClient`` implements it over pyzeebe
on a gRPC channel that is insecure, OAuth2-authenticated, or TLS.
"""

from __future__ import annotations

import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Optional, Protocol

import grpc
import httpx
from pyzeebe import ZeebeClient

from .config import ZeebeConfig
from .naming import dns_safe

logger = logging.getLogger(__name__)


class ProcessEngineClient(Protocol):
    async def deploy_definition(self, content: bytes, name: str) -> int:
        """Deploy a BPMN resource; returns the engine's deployment key."""

    async def create_instance(self, process_id: str, variables: Optional[dict[str, Any]] = None) -> int:
        """Start an instance of the latest deployed version; returns its key."""

    async def cancel_instance(self, key: int) -> None:
        ...

    async def publish_message(
        self,
        name: str,
        correlation_key: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> None:
        ...


# ── Channel ───────────────────────────────────────────────

# Seconds before the advertised expiry at which a token is fetched again.
TOKEN_REFRESH_MARGIN = 30

# Zeebe answers pings more frequent than its minimum with GOAWAY too_many_pings.
KEEPALIVE_OPTIONS = [
    ('grpc.keepalive_time_ms', 60_000),
    ('grpc.keepalive_timeout_ms', 20_000),
    ('grpc.keepalive_permit_without_calls', 1),
    ('grpc.http2.max_pings_without_data', 0),
]


class TokenManager:
    """OAuth2 client-credentials token for the gateway, refreshed before it expires."""

    def __init__(self, config: ZeebeConfig) -> None:
        self._config = config
        self._token: Optional[str] = None
        self._expires_at = 0.0

    def refresh_token(self) -> str:
        data = {
            'grant_type': 'client_credentials',
            'client_id': self._config.client_id,
            'client_secret': self._config.client_secret,
        }
        if self._config.audience:
            data['audience'] = self._config.audience

        resp = httpx.post(self._config.token_url, data=data, timeout=30.0)
        resp.raise_for_status()
        payload = resp.json()
        self._token = payload['access_token']
        expires_in = payload.get('expires_in')
        if expires_in:
            self._expires_at = time.monotonic() + float(expires_in) - TOKEN_REFRESH_MARGIN
        else:
            self._expires_at = float('inf')
        logger.info('Zeebe token refreshed for client %s', self._config.client_id)
        return self._token

    @property
    def token(self) -> str:
        if not self._token or time.monotonic() >= self._expires_at:
            return self.refresh_token()
        return self._token

    def metadata(self) -> tuple[str, str]:
        return ('authorization', f'Bearer {self.token}')


class _BearerTokenInterceptor(grpc.aio.UnaryUnaryClientInterceptor):
    """Adds the bearer token to every call on a plaintext channel."""

    def __init__(self, token_manager: TokenManager) -> None:
        self._token_manager = token_manager

    async def intercept_unary_unary(self, continuation, client_call_details, request):
        metadata = [*(client_call_details.metadata or ()), self._token_manager.metadata()]
        return await continuation(client_call_details._replace(metadata=metadata), request)


class _BearerAuthPlugin(grpc.AuthMetadataPlugin):
    """Per-call bearer credentials for TLS channels."""

    def __init__(self, token_manager: TokenManager) -> None:
        self._token_manager = token_manager

    def __call__(self, context, callback) -> None:
        try:
            metadata = (self._token_manager.metadata(),)
        except Exception as exc:
            # gRPC fails the call with this error
            callback((), exc)
            return
        callback(metadata, None)


def create_channel(config: ZeebeConfig) -> grpc.aio.Channel:
    """gRPC channel to the Zeebe gateway described by ``config``."""
    if not config.use_oauth:
        logger.info('Using insecure Zeebe channel to %s', config.gateway_address)
        return grpc.aio.insecure_channel(config.gateway_address, options=KEEPALIVE_OPTIONS)

    token_manager = TokenManager(config)
    # Bad credentials fail at startup, not at the first deployment.
    token_manager.refresh_token()

    if not config.use_tls:
        logger.info('Using insecure OAuth2 Zeebe channel to %s', config.gateway_address)
        return grpc.aio.insecure_channel(
            config.gateway_address,
            interceptors=[_BearerTokenInterceptor(token_manager)],
            options=KEEPALIVE_OPTIONS,
        )

    credentials = grpc.composite_channel_credentials(
        grpc.ssl_channel_credentials(),
        grpc.metadata_call_credentials(_BearerAuthPlugin(token_manager)),
    )
    logger.info('Using TLS OAuth2 Zeebe channel to %s', config.gateway_address)
    return grpc.aio.secure_channel(config.gateway_address, credentials, options=KEEPALIVE_OPTIONS)


# ── Zeebe implementation ──────────────────────────────────


class ZeebeEngineClient:
    """``ProcessEngineClient`` backed by ``pyzeebe.ZeebeClient``."""

    def __init__(self, client: ZeebeClient) -> None:
        self._client = client

    @classmethod
    def from_config(cls, config: ZeebeConfig) -> ZeebeEngineClient:
        return cls(ZeebeClient(create_channel(config)))

    async def deploy_definition(self, content: bytes, name: str) -> int:
        # pyzeebe deploys from files; the resource name is the file name.
        filename = Path(name).name or f'{dns_safe(name)}.bpmn'
        with tempfile.TemporaryDirectory(prefix='bpmn-') as tmp:
            path = Path(tmp) / filename
            path.write_bytes(content)
            response = await self._client.deploy_resource(str(path))
        logger.info('Deployed %s to Zeebe (deployment key %s)', filename, response.key)
        return response.key

    async def create_instance(self, process_id: str, variables: Optional[dict[str, Any]] = None) -> int:
        response = await self._client.run_process(bpmn_process_id=process_id, variables=variables or {})
        logger.info('Started %s instance %s', process_id, response.process_instance_key)
        return response.process_instance_key

    async def cancel_instance(self, key: int) -> None:
        await self._client.cancel_process_instance(key)
        logger.info('Cancelled process instance %s', key)

    async def publish_message(
        self,
        name: str,
        correlation_key: str,
        variables: Optional[dict[str, Any]] = None,
    ) -> None:
        await self._client.publish_message(
            name=name,
            correlation_key=correlation_key,
            variables=variables or {},
        )
        logger.info('Published message %s (correlation key %s)', name, correlation_key)
