"""Cluster adapter: namespace setup, Helm releases and the kubectl fallback.

Helm is the preferred path and the only one with rollback. With Helm
disabled the workload is applied as plain Deployment + Service manifests.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from ..config import ClusterConfig
from ..naming import dns_safe
from ..process import ProcessRunner
from . import AdapterResult, join_output

logger = logging.getLogger(__name__)

MANAGED_BY = 'procedure-builder'
CONTAINER_PORT = 8080
SERVICE_PORT = 80

DEFAULT_RESOURCES = {
    'requests': {'cpu': '100m', 'memory': '256Mi'},
    'limits': {'cpu': '500m', 'memory': '512Mi'},
}


def split_image(image: str) -> tuple[str, str]:
    """``registry/project/name:tag`` -> (``registry/project/name``, ``tag``)."""
    repository, sep, tag = image.rpartition(':')
    if not sep or '/' in tag:
        return image, 'latest'
    return repository, tag


class ClusterAdapter:
    def __init__(self, config: ClusterConfig, runner: ProcessRunner) -> None:
        self._config = config
        self._runner = runner

    @property
    def uses_helm(self) -> bool:
        return self._config.use_helm

    @staticmethod
    def release_name(name: str) -> str:
        return dns_safe(name)[:53].rstrip('-') or 'workflow'

    async def ensure_namespace(self, namespace: str) -> AdapterResult:
        timeout = self._config.kubectl_timeout
        result = await self._runner.run(['kubectl', 'get', 'namespace', namespace], timeout=timeout)
        if result.success:
            return AdapterResult(success=True, output=result.stdout)

        result = await self._runner.run(['kubectl', 'create', 'namespace', namespace], timeout=timeout)
        if not result.success:
            return AdapterResult.failed(join_output(result.stdout, f'Cannot create namespace {namespace}'))
        label = await self._runner.run(
            ['kubectl', 'label', 'namespace', namespace, f'managed-by={MANAGED_BY}', '--overwrite'],
            timeout=timeout,
        )
        if not label.success:
            logger.warning('Could not label namespace %s: %s', namespace, label.stdout.strip())
        logger.info('Created namespace: %s', namespace)
        return AdapterResult(success=True, output=join_output(result.stdout, label.stdout))

    async def deploy(
        self,
        namespace: str,
        name: str,
        image: str,
        values: Optional[dict[str, Any]] = None,
    ) -> AdapterResult:
        """Roll ``image`` out as ``name`` in ``namespace``; ``artifact_ref`` is the release."""
        values = values or {}
        logger.info('Deploying %s to namespace %s with image %s', name, namespace, image)

        namespace_result = await self.ensure_namespace(namespace)
        if not namespace_result.success:
            return namespace_result

        if self._config.use_helm:
            result = await self._deploy_helm(namespace, name, image, values)
        else:
            result = await self._deploy_manifests(namespace, name, image, values)
        result.output = join_output(namespace_result.output, result.output)
        return result

    async def _deploy_helm(self, namespace: str, name: str, image: str, values: dict[str, Any]) -> AdapterResult:
        release = self.release_name(name)
        repository, tag = split_image(image)
        timeout = self._config.helm_timeout
        chart = f'{self._config.chart_repository.rstrip("/")}/{self._config.chart_name}'
        command = [
            'helm', 'upgrade', '--install', release, chart,
            '--namespace', namespace,
            '--set', f'image.repository={repository}',
            '--set', f'image.tag={tag}',
            '--set', f'replicaCount={values.get("replicaCount", self._config.replica_count)}',
            '--wait',
            '--timeout', f'{timeout}s',
        ]
        # Process-level timeout leaves helm room to report its own --timeout.
        result = await self._runner.run(command, timeout=timeout + 30)
        if result.timed_out:
            return AdapterResult.failed(join_output(result.stdout, f'Helm timed out after {timeout} seconds'))
        if not result.success:
            return AdapterResult.failed(join_output(result.stdout, f'Helm deployment failed with exit code {result.exit_code}'))
        logger.info('Helm release %s deployed in %s', release, namespace)
        return AdapterResult(success=True, output=result.stdout, artifact_ref=release)

    def manifests(self, namespace: str, name: str, image: str, values: dict[str, Any]) -> dict[str, Any]:
        """Deployment + Service as a kubectl ``List``."""
        app = self.release_name(name)
        labels = {'app': app, 'version': split_image(image)[1], 'managed-by': MANAGED_BY}
        resources = values.get('resources', DEFAULT_RESOURCES)
        metadata = {'name': app, 'namespace': namespace, 'labels': labels}

        def probe(initial_delay: int, period: int) -> dict[str, Any]:
            return {
                'httpGet': {'path': '/health', 'port': CONTAINER_PORT},
                'initialDelaySeconds': initial_delay,
                'periodSeconds': period,
            }

        deployment = {
            'apiVersion': 'apps/v1',
            'kind': 'Deployment',
            'metadata': metadata,
            'spec': {
                'replicas': values.get('replicaCount', self._config.replica_count),
                'selector': {'matchLabels': {'app': app}},
                'template': {
                    'metadata': {'labels': labels},
                    'spec': {
                        'containers': [{
                            'name': app,
                            'image': image,
                            'ports': [{'containerPort': CONTAINER_PORT, 'name': 'http'}],
                            'resources': resources,
                            'livenessProbe': probe(60, 10),
                            'readinessProbe': probe(30, 5),
                            'env': [{'name': 'ZEEBE_ADDRESS', 'value': self._config.zeebe_address}],
                        }],
                    },
                },
            },
        }
        service = {
            'apiVersion': 'v1',
            'kind': 'Service',
            'metadata': metadata,
            'spec': {
                'selector': {'app': app},
                'ports': [{'port': SERVICE_PORT, 'targetPort': CONTAINER_PORT, 'name': 'http'}],
            },
        }
        return {'apiVersion': 'v1', 'kind': 'List', 'items': [deployment, service]}

    async def _deploy_manifests(self, namespace: str, name: str, image: str, values: dict[str, Any]) -> AdapterResult:
        document = json.dumps(self.manifests(namespace, name, image, values), indent=2)
        result = await self._runner.run(
            ['kubectl', 'apply', '-f', '-'],
            timeout=self._config.kubectl_timeout,
            input=document,
        )
        if result.timed_out:
            return AdapterResult.failed(
                join_output(result.stdout, f'kubectl apply timed out after {self._config.kubectl_timeout} seconds')
            )
        if not result.success:
            return AdapterResult.failed(join_output(result.stdout, f'kubectl apply failed with exit code {result.exit_code}'))
        app = self.release_name(name)
        logger.info('Kubernetes deployment and service applied: %s', app)
        return AdapterResult(success=True, output=result.stdout, artifact_ref=app)

    async def rollback(self, namespace: str, release: str) -> AdapterResult:
        """Roll a Helm release back to its previous revision."""
        logger.info('Rolling back deployment %s in namespace %s', release, namespace)
        if not self._config.use_helm:
            logger.warning('Rollback of %s is unsupported without Helm; roll back manually', release)
            return AdapterResult.failed('Rollback unsupported: workload was applied without Helm')

        timeout = self._config.helm_timeout
        result = await self._runner.run(
            ['helm', 'rollback', release, '--namespace', namespace, '--wait', '--timeout', f'{timeout}s'],
            timeout=timeout + 30,
        )
        if result.timed_out:
            return AdapterResult.failed(join_output(result.stdout, f'Helm rollback timed out after {timeout} seconds'))
        if not result.success:
            return AdapterResult.failed(join_output(result.stdout, f'Helm rollback failed with exit code {result.exit_code}'))
        logger.info('Rolled back %s in %s', release, namespace)
        return AdapterResult(success=True, output=result.stdout, artifact_ref=release)
