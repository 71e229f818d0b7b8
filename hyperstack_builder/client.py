"""
Hyperstack API client

Thin wrapper over the Hyperstack REST API covering the calls an image build
needs (VM, snapshot and image lifecycle) plus the catalog listings used when
authoring a configuration.

Every response is wrapped in a {"status": bool, "message": str, ...}
envelope; a false status is an error even when the HTTP status is 2xx.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import requests

from .errors import APIError, TransportError
from .models import (
    BuildSpec,
    CatalogImage,
    Environment,
    Flavor,
    ImageHandle,
    InstanceHandle,
    Keypair,
    Region,
    SnapshotHandle,
)

logger = logging.getLogger(__name__)

HYPERSTACK_API_BASE = "https://infrahub-api.nexgencloud.com/v1"
REQUEST_TIMEOUT = 30
SSH_PORT = 22


class LifecycleClient(Protocol):
    """Resource lifecycle calls the orchestrator depends on."""

    def create_instance(self, spec: BuildSpec, name: str) -> InstanceHandle: ...

    def get_instance(self, instance_id: int) -> InstanceHandle: ...

    def delete_instance(self, instance_id: int) -> None: ...

    def create_snapshot(self, instance_id: int, name: str) -> SnapshotHandle: ...

    def get_snapshot(self, snapshot_id: int) -> SnapshotHandle: ...

    def create_image(self, snapshot_id: int, name: str, labels: Sequence[str]) -> ImageHandle: ...


def ssh_ingress_rule() -> Dict[str, Any]:
    """Security rule opening the SSH port to all sources."""
    return {
        'direction': 'ingress',
        'protocol': 'tcp',
        'ethertype': 'IPv4',
        'remote_ip_prefix': '0.0.0.0/0',
        'port_range_min': SSH_PORT,
        'port_range_max': SSH_PORT,
    }


class HyperstackClient:
    """Hyperstack REST client authenticated with an API key."""

    def __init__(
        self,
        api_key: str,
        base_url: str = HYPERSTACK_API_BASE,
        timeout: float = REQUEST_TIMEOUT,
        session: Optional[requests.Session] = None
    ) -> None:
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'api_key': api_key,
        })

    def _request(self, method: str, endpoint: str, body: Optional[dict] = None) -> requests.Response:
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"{method} {url}")
        try:
            return self.session.request(method, url, json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {endpoint} failed: {e}") from e

    def _call(self, method: str, endpoint: str, body: Optional[dict] = None) -> Dict[str, Any]:
        """
        Send a request and unwrap the response envelope.

        Raises:
            TransportError: If the request never got an HTTP response
            APIError: On a non-2xx status, a non-JSON body or a false status flag
        """
        response = self._request(method, endpoint, body)

        if response.status_code not in (200, 201):
            raise APIError(
                f"API request {method} {endpoint} failed: status {response.status_code}, "
                f"body: {response.text}",
                status_code=response.status_code,
                body=response.text
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise APIError(
                f"Failed to parse response of {method} {endpoint}: {e}",
                status_code=response.status_code,
                body=response.text
            ) from e

        if not isinstance(payload, dict):
            raise APIError(
                f"Unexpected response shape from {method} {endpoint}",
                status_code=response.status_code,
                body=response.text
            )

        # Snapshot reads report an integer status, everything else a boolean
        if not payload.get('status', True):
            raise APIError(
                f"API returned error: {payload.get('message', '')}",
                status_code=response.status_code,
                body=response.text
            )

        return payload

    @staticmethod
    def _field(payload: Dict[str, Any], key: str, endpoint: str) -> Any:
        if key not in payload or payload[key] is None:
            raise APIError(f"Response from {endpoint} is missing '{key}'", body=str(payload))
        return payload[key]

    # Virtual machines

    def create_instance(self, spec: BuildSpec, name: str) -> InstanceHandle:
        """
        Request a single VM for the build.

        Args:
            spec: Build input (base image, flavor, keypair, environment, tags)
            name: Unique instance name

        Returns:
            The created instance as first reported by the API
        """
        request_body = {
            'name': name,
            'image_name': spec.base_image_name,
            'flavor_name': spec.flavor_name,
            'key_name': spec.keypair_name,
            'environment_name': spec.environment_name,
            'count': 1,
            'labels': list(spec.tags),
            'assign_floating_ip': True,
            'security_rules': [ssh_ingress_rule()],
        }
        endpoint = '/core/virtual-machines'
        payload = self._call('POST', endpoint, request_body)

        instances = payload.get('instances') or []
        if not instances:
            raise APIError("No instances created", body=str(payload))

        return InstanceHandle.from_payload(instances[0])

    def get_instance(self, instance_id: int) -> InstanceHandle:
        endpoint = f'/core/virtual-machines/{instance_id}'
        payload = self._call('GET', endpoint)
        return InstanceHandle.from_payload(self._field(payload, 'instance', endpoint))

    def delete_instance(self, instance_id: int) -> None:
        endpoint = f'/core/virtual-machines/{instance_id}'
        response = self._request('DELETE', endpoint)

        if response.status_code not in (200, 204):
            raise APIError(
                f"Failed to delete VM {instance_id}: status {response.status_code}, "
                f"body: {response.text}",
                status_code=response.status_code,
                body=response.text
            )

        # 204 carries no envelope; a 200 body still has to report success
        if response.status_code == 204 or not response.text.strip():
            return

        try:
            payload = response.json()
        except ValueError as e:
            raise APIError(
                f"Failed to parse response of DELETE {endpoint}: {e}",
                status_code=response.status_code,
                body=response.text
            ) from e

        if isinstance(payload, dict) and not payload.get('status', True):
            raise APIError(
                f"Failed to delete VM {instance_id}: {payload.get('message', '')}",
                status_code=response.status_code,
                body=response.text
            )

    # Snapshots and images

    def create_snapshot(self, instance_id: int, name: str) -> SnapshotHandle:
        endpoint = f'/core/virtual-machines/{instance_id}/snapshots'
        payload = self._call('POST', endpoint, {
            'name': name,
            'description': f"Snapshot of VM {instance_id} for image building",
        })
        return SnapshotHandle.from_payload(self._field(payload, 'snapshot', endpoint))

    def get_snapshot(self, snapshot_id: int) -> SnapshotHandle:
        endpoint = f'/core/snapshots/{snapshot_id}'
        payload = self._call('GET', endpoint)
        return SnapshotHandle.from_payload(self._field(payload, 'snapshot', endpoint))

    def create_image(self, snapshot_id: int, name: str, labels: Sequence[str]) -> ImageHandle:
        endpoint = f'/core/snapshots/{snapshot_id}/image'
        body: Dict[str, Any] = {'name': name}
        if labels:
            body['labels'] = list(labels)
        payload = self._call('POST', endpoint, body)
        return ImageHandle.from_payload(self._field(payload, 'image', endpoint))

    # Catalog

    def list_images(self) -> List[CatalogImage]:
        """List images, flattening the per-region groups."""
        payload = self._call('GET', '/core/images')
        images = []
        for group in payload.get('images') or []:
            for image in group.get('images') or []:
                images.append(CatalogImage(
                    id=image['id'],
                    name=image.get('name', ''),
                    region_name=image.get('region_name', ''),
                    type=image.get('type', ''),
                    version=image.get('version', ''),
                    size=image.get('size') or 0,
                    is_public=bool(image.get('is_public')),
                    labels=tuple(label.get('label', '') for label in image.get('labels') or []),
                ))
        return images

    def list_regions(self) -> List[Region]:
        payload = self._call('GET', '/core/regions')
        return [Region(id=r['id'], name=r.get('name', '')) for r in payload.get('regions') or []]

    def list_flavors(self) -> List[Flavor]:
        """List flavors, flattening the per-GPU/region groups."""
        payload = self._call('GET', '/core/flavors')
        flavors = []
        for group in payload.get('data') or []:
            for flavor in group.get('flavors') or []:
                flavors.append(Flavor(
                    id=flavor['id'],
                    name=flavor.get('name', ''),
                    region_name=flavor.get('region_name', ''),
                    cpu=flavor.get('cpu') or 0,
                    ram=flavor.get('ram') or 0.0,
                    disk=flavor.get('disk') or 0,
                    gpu=flavor.get('gpu') or '',
                    gpu_count=flavor.get('gpu_count') or 0,
                ))
        return flavors

    def list_keypairs(self) -> List[Keypair]:
        payload = self._call('GET', '/core/keypairs')
        return [
            Keypair(
                id=kp['id'],
                name=kp.get('name', ''),
                environment_name=(kp.get('environment') or {}).get('name', ''),
                fingerprint=kp.get('fingerprint', ''),
            )
            for kp in payload.get('keypairs') or []
        ]

    def list_environments(self) -> List[Environment]:
        payload = self._call('GET', '/core/environments')
        return [
            Environment(id=env['id'], name=env.get('name', ''))
            for env in payload.get('environments') or []
        ]
