"""Temporal client factory.

Creates connections to Temporal using settings from the environment.
Temporal Cloud needs an endpoint and API key; a local dev server
(`temporal server start-dev`) needs neither.
"""

import os
from pathlib import Path
from typing import Union

# Load .env file if it exists
from dotenv import load_dotenv
env_path = Path(__file__).resolve().parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

from temporalio.client import Client
from temporalio.service import TLSConfig

LOCAL_ENDPOINT = "localhost:7233"


async def get_temporal_client() -> Client:
    """Create and return a Temporal client.

    Reads configuration from environment variables:
    - TEMPORAL_ENDPOINT: Server endpoint (default "localhost:7233")
    - TEMPORAL_NAMESPACE: Namespace (default "default")
    - TEMPORAL_API_KEY: API key for Temporal Cloud (enables TLS)
    - TEMPORAL_CERT_PATH / TEMPORAL_KEY_PATH: Client certificate and key (optional, for mTLS)

    Returns:
        Connected Temporal client

    Raises:
        ValueError: If a remote endpoint is configured without an API key or certificate
    """
    endpoint = os.getenv("TEMPORAL_ENDPOINT", LOCAL_ENDPOINT)
    namespace = os.getenv("TEMPORAL_NAMESPACE", "default")
    api_key = os.getenv("TEMPORAL_API_KEY")
    cert_path = os.getenv("TEMPORAL_CERT_PATH")
    key_path = os.getenv("TEMPORAL_KEY_PATH")

    if endpoint == LOCAL_ENDPOINT and not (api_key or cert_path):
        return await Client.connect(endpoint, namespace=namespace)

    if not (api_key or cert_path):
        raise ValueError(
            "TEMPORAL_API_KEY environment variable not set. "
            f"Set it for {endpoint}, or unset TEMPORAL_ENDPOINT to use a local server"
        )

    tls: Union[bool, TLSConfig] = True
    if cert_path and key_path:
        tls = TLSConfig(
            client_cert=Path(cert_path).read_bytes(),
            client_private_key=Path(key_path).read_bytes(),
        )

    return await Client.connect(
        endpoint,
        namespace=namespace,
        tls=tls,
        api_key=api_key,
    )
