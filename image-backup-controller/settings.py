import os
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional

DEFAULT_EXCLUDED_NAMESPACES = "kube-system"
DEFAULT_REPOSITORY = "mirror"


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration shared by every worker"""
    registry: str = ""
    repository: str = DEFAULT_REPOSITORY
    registry_username: str = ""
    registry_password: str = ""
    excluded_namespaces: FrozenSet[str] = field(default_factory=frozenset)
    kubeconfig: Optional[str] = None
    workers: int = 1
    not_ready_requeue_seconds: float = 10.0
    api_timeout_seconds: float = 30.0
    registry_timeout_seconds: float = 60.0
    max_permanent_retries: int = 5
    registry_insecure: bool = False
    skip_login: bool = False
    log_level: str = "INFO"

    def is_excluded(self, namespace: str) -> bool:
        return namespace in self.excluded_namespaces

    def validate(self) -> List[str]:
        """Return a list of configuration problems, empty when valid"""
        problems = []
        if not self.repository:
            problems.append("REPOSITORY must not be empty")
        if self.workers < 1:
            problems.append(f"WORKERS must be at least 1, got {self.workers}")
        if bool(self.registry_username) != bool(self.registry_password):
            problems.append("REGISTRY_USERNAME and REGISTRY_PASSWORD must be set together")
        if self.not_ready_requeue_seconds <= 0:
            problems.append("NOT_READY_REQUEUE_SECONDS must be positive")
        if self.api_timeout_seconds <= 0 or self.registry_timeout_seconds <= 0:
            problems.append("timeouts must be positive")
        if self.max_permanent_retries < 0:
            problems.append("MAX_PERMANENT_RETRIES must not be negative")
        return problems


def parse_namespaces(value: str) -> FrozenSet[str]:
    return frozenset(ns.strip() for ns in value.split(",") if ns.strip())


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


# Configuration helper
def create_config_from_env() -> ControllerConfig:
    """Create controller config from environment variables"""
    return ControllerConfig(
        registry=os.getenv('REGISTRY', ''),
        repository=os.getenv('REPOSITORY', DEFAULT_REPOSITORY),
        registry_username=os.getenv('REGISTRY_USERNAME', ''),
        registry_password=os.getenv('REGISTRY_PASSWORD', ''),
        excluded_namespaces=parse_namespaces(
            os.getenv('EXCLUDED_NAMESPACES', DEFAULT_EXCLUDED_NAMESPACES)
        ),
        kubeconfig=os.getenv('KUBECONFIG') or None,
        workers=int(os.getenv('WORKERS', '1')),
        not_ready_requeue_seconds=float(os.getenv('NOT_READY_REQUEUE_SECONDS', '10')),
        api_timeout_seconds=float(os.getenv('API_TIMEOUT_SECONDS', '30')),
        registry_timeout_seconds=float(os.getenv('REGISTRY_TIMEOUT_SECONDS', '60')),
        max_permanent_retries=int(os.getenv('MAX_PERMANENT_RETRIES', '5')),
        registry_insecure=_env_bool('REGISTRY_INSECURE'),
        skip_login=_env_bool('SKIP_LOGIN'),
        log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
    )
