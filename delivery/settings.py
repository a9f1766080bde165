# delivery/settings.py
"""
Orchestrator settings.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

# Load .env file
from dotenv import load_dotenv
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass
class Settings:
    """Orchestrator configuration."""

    # Database (goal record store)
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./var/goals.db")

    # Registration identity written into provenance records
    registration_name: str = os.getenv("SDM_NAME", "goal-delivery")
    registration_version: str = os.getenv("SDM_VERSION", "0.1.0")

    # Goal signing
    signing_enabled: bool = _env_bool("GOAL_SIGNING_ENABLED")
    signing_scope: str = os.getenv("GOAL_SIGNING_SCOPE", "fulfillment")
    signing_key_path: Optional[str] = os.getenv("GOAL_SIGNING_KEY")
    signing_public_key_path: Optional[str] = os.getenv("GOAL_SIGNING_PUBLIC_KEY")
    signing_passphrase: Optional[str] = os.getenv("GOAL_SIGNING_PASSPHRASE")
    verification_key_paths: List[str] = field(
        default_factory=lambda: _env_list("GOAL_VERIFICATION_KEYS")
    )

    # Workspace the goals belong to (job labels and env)
    workspace_id: str = os.getenv("ATOMIST_WORKSPACE_ID", os.getenv("ATOMIST_GOAL_TEAM", ""))
    workspace_name: str = os.getenv("ATOMIST_WORKSPACE_NAME", os.getenv("ATOMIST_GOAL_TEAM_NAME", ""))

    # Isolated goal worker identity
    isolated_goal: bool = _env_bool("ATOMIST_ISOLATED_GOAL")
    isolated_goal_init: bool = _env_bool("ATOMIST_ISOLATED_GOAL_INIT")
    goal_set_id: Optional[str] = os.getenv("ATOMIST_GOAL_SET_ID")
    goal_unique_name: Optional[str] = os.getenv("ATOMIST_GOAL_UNIQUE_NAME")

    # Goal scheduling (kubernetes | kubernetes-all | empty)
    goal_scheduler: str = os.getenv("ATOMIST_GOAL_SCHEDULER", os.getenv("ATOMIST_GOAL_LAUNCHER", ""))

    # Kubernetes
    pod_name: Optional[str] = os.getenv("ATOMIST_POD_NAME")
    pod_namespace: Optional[str] = os.getenv("ATOMIST_POD_NAMESPACE", os.getenv("ATOMIST_DEPLOYMENT_NAMESPACE"))
    k8s_api_url: Optional[str] = os.getenv("KUBERNETES_API_URL")
    k8s_token_path: str = os.getenv(
        "KUBERNETES_TOKEN_PATH", "/var/run/secrets/kubernetes.io/serviceaccount/token"
    )
    k8s_ca_path: str = os.getenv(
        "KUBERNETES_CA_PATH", "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"
    )
    k8s_timeout_seconds: float = float(os.getenv("KUBERNETES_TIMEOUT", "30"))
    k8s_job_ttl_seconds: float = float(os.getenv("KUBERNETES_JOB_TTL", "120"))
    k8s_job_ttl_check_interval_seconds: float = float(os.getenv("KUBERNETES_JOB_TTL_CHECK_INTERVAL", "15"))
    k8s_container_start_attempts: int = int(os.getenv("KUBERNETES_CONTAINER_START_ATTEMPTS", "120"))

    # Project checkout (local directory, or git clone when a clone URL is set)
    project_root: str = os.getenv("PROJECT_ROOT", "./var/projects/")
    project_clone_url: Optional[str] = os.getenv("PROJECT_CLONE_URL")

    # Goal cache
    cache_enabled: bool = _env_bool("GOAL_CACHE_ENABLED")
    cache_path: str = os.getenv("GOAL_CACHE_PATH", "./var/cache/")

    # Container runtime
    docker_binary: str = os.getenv("DOCKER_BINARY", "docker")
    docker_kill_timeout_seconds: float = float(os.getenv("DOCKER_KILL_TIMEOUT", "30"))

    # API settings
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_json: bool = _env_bool("LOG_JSON", "true")


# Global settings instance
settings = Settings()
