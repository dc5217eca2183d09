"""Pipeline configuration and environment loading."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent.parent / '.env.deployer')


def _flag(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class ZeebeConfig:
    """Zeebe connection settings."""

    gateway_address: str = 'zeebe:26500'
    use_tls: bool = False
    client_id: str = ''
    client_secret: str = ''
    token_url: str = ''
    audience: str = ''

    @property
    def use_oauth(self) -> bool:
        return bool(self.client_id and self.client_secret and self.token_url)


@dataclass(frozen=True)
class GitConfig:
    """Repository that receives generated services."""

    remote_url: str = ''
    branch: str = 'main'
    username: str = ''
    password: str = ''
    author_name: str = 'Procedure Builder'
    author_email: str = 'procedure-builder@e-guce.cm'
    timeout: int = 120


@dataclass(frozen=True)
class BuildConfig:
    """Packaging and test commands for generated services."""

    command: tuple[str, ...] = ('python', '-m', 'build', '--wheel')
    test_command: tuple[str, ...] = ('python', '-m', 'pytest', '-q')
    run_tests: bool = False
    timeout: int = 600
    output_dir: str = 'dist'
    artifact_pattern: str = '*.whl'


@dataclass(frozen=True)
class RegistryConfig:
    """Container registry settings."""

    url: str = 'harbor.e-guce.cm'
    project: str = 'guce-workflows'
    username: str = ''
    password: str = ''
    timeout: int = 900

    @property
    def has_credentials(self) -> bool:
        return bool(self.username)


@dataclass(frozen=True)
class ClusterConfig:
    """Kubernetes / Helm settings."""

    use_helm: bool = True
    chart_repository: str = 'oci://harbor.e-guce.cm/charts'
    chart_name: str = 'guce-workflow'
    helm_timeout: int = 600
    kubectl_timeout: int = 120
    replica_count: int = 2
    zeebe_address: str = 'zeebe-gateway:26500'


@dataclass(frozen=True)
class ApiConfig:
    """HTTP trigger surface settings."""

    host: str = '0.0.0.0'
    port: int = 9002
    token: str = ''


@dataclass(frozen=True)
class AppConfig:
    """Root configuration assembled from environment variables."""

    zeebe: ZeebeConfig = field(default_factory=ZeebeConfig)
    git: GitConfig = field(default_factory=GitConfig)
    build: BuildConfig = field(default_factory=BuildConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    cluster: ClusterConfig = field(default_factory=ClusterConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    work_dir: str = '/tmp/guce-deployments'
    # Attempt directories are deleted once a run ends unless this is set.
    keep_work_dirs: bool = False
    workflow_dir: str = ''

    @classmethod
    def from_env(cls) -> AppConfig:
        """Build configuration from environment variables."""
        build_defaults = BuildConfig()
        build_command = os.getenv('BUILD_COMMAND', '')
        test_command = os.getenv('BUILD_TEST_COMMAND', '')

        return cls(
            zeebe=ZeebeConfig(
                gateway_address=os.getenv('ZEEBE_ADDRESS', 'zeebe:26500'),
                use_tls=_flag('ZEEBE_USE_TLS'),
                client_id=os.getenv('ZEEBE_CLIENT_ID', ''),
                client_secret=os.getenv('ZEEBE_CLIENT_SECRET', ''),
                token_url=os.getenv('ZEEBE_TOKEN_URL', ''),
                audience=os.getenv('ZEEBE_AUDIENCE', ''),
            ),
            git=GitConfig(
                remote_url=os.getenv('GIT_REPOSITORY_URL', ''),
                branch=os.getenv('GIT_REPOSITORY_BRANCH', 'main'),
                username=os.getenv('GIT_USERNAME', ''),
                password=os.getenv('GIT_PASSWORD', ''),
                timeout=int(os.getenv('GIT_TIMEOUT', '120')),
            ),
            build=BuildConfig(
                command=tuple(build_command.split()) if build_command else build_defaults.command,
                test_command=tuple(test_command.split()) if test_command else build_defaults.test_command,
                run_tests=_flag('BUILD_RUN_TESTS'),
                timeout=int(os.getenv('BUILD_TIMEOUT', '600')),
                output_dir=os.getenv('BUILD_OUTPUT_DIR', 'dist'),
                artifact_pattern=os.getenv('BUILD_ARTIFACT_PATTERN', '*.whl'),
            ),
            registry=RegistryConfig(
                url=os.getenv('DOCKER_REGISTRY_URL', 'harbor.e-guce.cm'),
                project=os.getenv('DOCKER_REGISTRY_PROJECT', 'guce-workflows'),
                username=os.getenv('DOCKER_REGISTRY_USERNAME', ''),
                password=os.getenv('DOCKER_REGISTRY_PASSWORD', ''),
                timeout=int(os.getenv('DOCKER_BUILD_TIMEOUT', '900')),
            ),
            cluster=ClusterConfig(
                use_helm=_flag('KUBERNETES_USE_HELM', 'true'),
                chart_repository=os.getenv('HELM_CHART_REPOSITORY', 'oci://harbor.e-guce.cm/charts'),
                chart_name=os.getenv('HELM_CHART_NAME', 'guce-workflow'),
                helm_timeout=int(os.getenv('HELM_TIMEOUT', '600')),
                kubectl_timeout=int(os.getenv('KUBECTL_TIMEOUT', '120')),
                replica_count=int(os.getenv('WORKLOAD_REPLICAS', '2')),
                zeebe_address=os.getenv('WORKLOAD_ZEEBE_ADDRESS', 'zeebe-gateway:26500'),
            ),
            api=ApiConfig(
                host=os.getenv('API_HOST', '0.0.0.0'),
                port=int(os.getenv('API_PORT', '9002')),
                token=os.getenv('API_TOKEN', ''),
            ),
            work_dir=os.getenv('DEPLOYMENT_WORK_DIR', '/tmp/guce-deployments'),
            keep_work_dirs=_flag('DEPLOYMENT_KEEP_WORK_DIRS'),
            workflow_dir=os.getenv('WORKFLOW_DIR', ''),
        )
