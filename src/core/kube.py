"""
Kubernetes Secret store - list, watch and conditional update through the core/v1 REST API.
"""

import atexit
import base64
import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

import requests
import yaml
from pydantic import ValidationError

from .errors import ConfigError, ConflictError, NotFoundError, StoreError, WatchExpiredError
from .schema import ChangeEvent, SecretRecord, record_from_manifest, record_to_manifest
from .store import SecretStore
from util.logging import logger

SERVICE_ACCOUNT_DIR = "/var/run/secrets/kubernetes.io/serviceaccount"
CONNECT_TIMEOUT_SEC = 10


@dataclass
class ClusterCredentials:
    """Everything needed to authenticate against the API server."""
    server: str
    token: Optional[str] = None
    verify: Union[bool, str] = True  # CA bundle path, or False to skip TLS verification
    client_cert: Optional[Tuple[str, str]] = None


# Temp files holding inline kubeconfig certificates and keys, removed at interpreter exit
_materialized_paths: List[str] = []


def cleanup_materialized():
    """Remove temp files written for inline kubeconfig data."""
    while _materialized_paths:
        path = _materialized_paths.pop()
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass


atexit.register(cleanup_materialized)


def _materialize(data_b64: str, suffix: str) -> str:
    """Write base64 inline kubeconfig data to a temp file and return its path."""
    handle = tempfile.NamedTemporaryFile(prefix="secret-generator-", suffix=suffix, delete=False)
    _materialized_paths.append(handle.name)
    with handle:
        handle.write(base64.b64decode(data_b64))
    return handle.name


def _resolve(path: str, base_dir: Path) -> str:
    p = Path(path).expanduser()
    return str(p if p.is_absolute() else base_dir / p)


def _named(entries: List[Dict], name: str, kind: str) -> Dict:
    for entry in entries or []:
        if entry.get("name") == name:
            return entry.get(kind) or {}
    raise ConfigError(f"kubeconfig has no {kind} named {name!r}")


def load_incluster_credentials(sa_dir: str = SERVICE_ACCOUNT_DIR, env: Dict[str, str] = None) -> ClusterCredentials:
    """Credentials of the pod's service account."""
    env = os.environ if env is None else env
    host = env.get("KUBERNETES_SERVICE_HOST")
    port = env.get("KUBERNETES_SERVICE_PORT", "443")

    if not host:
        raise ConfigError("Not running in a cluster: KUBERNETES_SERVICE_HOST is not set and no kubeconfig given")

    token_path = Path(sa_dir) / "token"
    ca_path = Path(sa_dir) / "ca.crt"

    try:
        token = token_path.read_text().strip()
    except OSError as e:
        raise ConfigError(f"Cannot read service account token: {e}") from e

    if ":" in host:
        host = f"[{host}]"

    return ClusterCredentials(
        server=f"https://{host}:{port}",
        token=token,
        verify=str(ca_path) if ca_path.exists() else True,
    )


def load_kubeconfig_credentials(path: str) -> ClusterCredentials:
    """Credentials of the current context of a kubeconfig file."""
    config_path = Path(path).expanduser()
    try:
        config = yaml.safe_load(config_path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot load kubeconfig {path}: {e}") from e

    base_dir = config_path.parent
    context_name = config.get("current-context")
    if not context_name:
        raise ConfigError(f"kubeconfig {path} has no current-context")

    context = _named(config.get("contexts"), context_name, "context")
    cluster = _named(config.get("clusters"), context.get("cluster"), "cluster")
    user = _named(config.get("users"), context.get("user"), "user") if context.get("user") else {}

    server = cluster.get("server")
    if not server:
        raise ConfigError(f"cluster {context.get('cluster')!r} has no server")

    verify: Union[bool, str] = True
    if cluster.get("insecure-skip-tls-verify"):
        verify = False
    elif cluster.get("certificate-authority-data"):
        verify = _materialize(cluster["certificate-authority-data"], ".crt")
    elif cluster.get("certificate-authority"):
        verify = _resolve(cluster["certificate-authority"], base_dir)

    client_cert = None
    if user.get("client-certificate-data") and user.get("client-key-data"):
        client_cert = (_materialize(user["client-certificate-data"], ".crt"),
                       _materialize(user["client-key-data"], ".key"))
    elif user.get("client-certificate") and user.get("client-key"):
        client_cert = (_resolve(user["client-certificate"], base_dir),
                       _resolve(user["client-key"], base_dir))

    token = user.get("token")
    if not token and user.get("tokenFile"):
        try:
            token = Path(_resolve(user["tokenFile"], base_dir)).read_text().strip()
        except OSError as e:
            raise ConfigError(f"Cannot read token file: {e}") from e

    return ClusterCredentials(server=server.rstrip("/"), token=token, verify=verify, client_cert=client_cert)


def load_credentials(kubeconfig: str = "") -> ClusterCredentials:
    """Kubeconfig when a path is given, in-cluster service account otherwise."""
    if kubeconfig:
        return load_kubeconfig_credentials(kubeconfig)
    return load_incluster_credentials()


def _error_message(response: requests.Response) -> str:
    try:
        return response.json().get("message", response.text)
    except ValueError:
        return response.text


class KubernetesSecretStore(SecretStore):
    """Secret store backed by the Kubernetes API server."""

    def __init__(self, credentials: ClusterCredentials, session: requests.Session = None,
                 request_timeout_sec: int = 30):
        self.server = credentials.server.rstrip("/")
        self.request_timeout_sec = request_timeout_sec
        self.session = session or requests.Session()
        self.session.verify = credentials.verify
        if credentials.token:
            self.session.headers["Authorization"] = f"Bearer {credentials.token}"
        if credentials.client_cert:
            self.session.cert = credentials.client_cert
        self.session.headers["Accept"] = "application/json"

    def _secrets_url(self, namespace: str = "", name: str = "") -> str:
        if not namespace:
            return f"{self.server}/api/v1/secrets"
        url = f"{self.server}/api/v1/namespaces/{namespace}/secrets"
        return f"{url}/{name}" if name else url

    def _parse_items(self, items: List[Dict]) -> List[SecretRecord]:
        records = []
        for item in items:
            try:
                records.append(record_from_manifest(item))
            except ValidationError as e:
                name = (item.get("metadata") or {}).get("name") if isinstance(item, dict) else None
                logger.warning(f"Skipping malformed secret {name!r}: {e.error_count()} validation errors")
        return records

    def list_secrets(self, namespace: str = "") -> Tuple[List[SecretRecord], str]:
        try:
            response = self.session.get(self._secrets_url(namespace), timeout=self.request_timeout_sec)
        except requests.RequestException as e:
            raise StoreError(f"Failed to list secrets: {e}", namespace) from e

        if response.status_code != 200:
            raise StoreError(f"Failed to list secrets: {_error_message(response)}", namespace,
                             status_code=response.status_code)

        try:
            body = response.json()
            version = (body.get("metadata") or {}).get("resourceVersion", "")
            items = body.get("items") or []
        except (ValueError, AttributeError) as e:
            raise StoreError(f"Malformed secret list: {e}", namespace, status_code=response.status_code) from e

        return self._parse_items(items), version

    def watch_secrets(self, namespace: str = "", since: str = "", timeout_sec: int = 60,
                      stop_event: Optional[threading.Event] = None) -> Iterator[ChangeEvent]:
        params = {"watch": "1", "timeoutSeconds": str(timeout_sec)}
        if since:
            params["resourceVersion"] = since

        try:
            with self.session.get(self._secrets_url(namespace), params=params, stream=True,
                                  timeout=(CONNECT_TIMEOUT_SEC, timeout_sec + CONNECT_TIMEOUT_SEC)) as response:
                if response.status_code == 410:
                    raise WatchExpiredError(f"Watch version {since} expired", version=since)
                if response.status_code != 200:
                    raise StoreError(f"Failed to watch secrets: {_error_message(response)}", namespace,
                                     status_code=response.status_code)

                for line in response.iter_lines():
                    if stop_event is not None and stop_event.is_set():
                        return
                    if not line:
                        continue

                    try:
                        event = json.loads(line)
                    except ValueError as e:
                        raise StoreError(f"Malformed watch stream: {e}", namespace) from e
                    event_type = event.get("type")
                    obj = event.get("object") or {}

                    if event_type == "ERROR":
                        code = obj.get("code")
                        if code == 410:
                            raise WatchExpiredError(obj.get("message", "watch expired"), version=since)
                        raise StoreError(f"Watch error: {obj.get('message')}", namespace, status_code=code)

                    if event_type == "BOOKMARK":
                        continue

                    try:
                        record = record_from_manifest(obj)
                    except ValidationError as e:
                        logger.warning(f"Skipping malformed watch event: {e.error_count()} validation errors")
                        continue

                    yield ChangeEvent(type=event_type, record=record, version=record.resource_version)
        except requests.RequestException as e:
            raise StoreError(f"Watch connection failed: {e}", namespace) from e

    def update_secret(self, record: SecretRecord) -> SecretRecord:
        body = record_to_manifest(record)

        try:
            response = self.session.put(self._secrets_url(record.namespace, record.name), json=body,
                                        timeout=self.request_timeout_sec)
        except requests.RequestException as e:
            raise StoreError(f"Failed to update secret: {e}", record.namespace, record.name) from e

        if response.status_code == 409:
            raise ConflictError(f"Secret {record.identity} was modified: {_error_message(response)}",
                                record.namespace, record.name, expected_version=record.resource_version)
        if response.status_code == 404:
            raise NotFoundError(f"Secret {record.identity} not found", record.namespace, record.name)
        if response.status_code not in (200, 201):
            raise StoreError(f"Failed to update secret: {_error_message(response)}", record.namespace,
                             record.name, status_code=response.status_code)

        try:
            updated = record_from_manifest(response.json())
        except (ValueError, ValidationError) as e:
            raise StoreError(f"Malformed update response for {record.identity}: {e}", record.namespace,
                             record.name, status_code=response.status_code) from e

        logger.log_store_operation("update", updated.identity,
                                   details={"resource_version": updated.resource_version})
        return updated

    def health_check(self) -> bool:
        """Check the API server answers /version."""
        try:
            response = self.session.get(f"{self.server}/version", timeout=CONNECT_TIMEOUT_SEC)
            return response.status_code == 200
        except requests.RequestException:
            return False
