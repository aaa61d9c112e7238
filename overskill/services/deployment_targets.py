"""
Deployment Targets - Naming, addressing and secret policy per environment

Every app is deployed as a separate worker per target:

    PREVIEW     worker preview-app-{id}   host preview--{subdomain}.{domain}
    STAGING     worker staging-app-{id}   host staging--{subdomain}.{domain}
    PRODUCTION  worker app-{id}           host {subdomain}.{domain}

Secrets shipped to a worker are split into platform secrets (never shown to the
app owner) and user variables. User variables with secret-like names are refused.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from overskill.core.config import settings
from overskill.core.exceptions import InvalidSubdomainError, SecretPolicyError


class DeploymentTarget(str, Enum):
    PREVIEW = "preview"
    STAGING = "staging"
    PRODUCTION = "production"

    @property
    def requires_production_build(self) -> bool:
        return self is DeploymentTarget.PRODUCTION


WORKER_PREFIXES = {
    DeploymentTarget.PREVIEW: "preview-app-",
    DeploymentTarget.STAGING: "staging-app-",
    DeploymentTarget.PRODUCTION: "app-",
}

SUBDOMAIN_PREFIXES = {
    DeploymentTarget.PREVIEW: "preview--",
    DeploymentTarget.STAGING: "staging--",
    DeploymentTarget.PRODUCTION: "",
}

SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_LABEL_LENGTH = 63

SECRET_NAME_PATTERN = re.compile(
    r"SECRET|PASSWORD|PRIVATE|TOKEN|SERVICE_KEY|API_KEY|CREDENTIAL",
    re.IGNORECASE,
)


def sanitize_subdomain(value: str) -> str:
    """Lowercase, replace anything outside [a-z0-9-] with '-', collapse and trim"""
    label = re.sub(r"[^a-z0-9-]", "-", (value or "").lower())
    label = re.sub(r"-{2,}", "-", label).strip("-")
    return label[:MAX_LABEL_LENGTH].rstrip("-")


def validate_subdomain(subdomain: str) -> str:
    if not subdomain or not SUBDOMAIN_PATTERN.match(subdomain):
        raise InvalidSubdomainError(subdomain or "")
    return subdomain


def worker_name(app_id: str, target: DeploymentTarget) -> str:
    return f"{WORKER_PREFIXES[target]}{str(app_id).lower()}"


def target_subdomain(subdomain: str, target: DeploymentTarget) -> str:
    """Full host label for a target; the prefixed label must still be a valid DNS label"""
    base = validate_subdomain(subdomain)
    return validate_subdomain(f"{SUBDOMAIN_PREFIXES[target]}{base}")


def target_url(subdomain: str, target: DeploymentTarget, base_domain: Optional[str] = None) -> str:
    domain = base_domain or settings.APP_BASE_DOMAIN
    return f"https://{target_subdomain(subdomain, target)}.{domain}"


def route_pattern(subdomain: str, target: DeploymentTarget, base_domain: Optional[str] = None) -> str:
    domain = base_domain or settings.APP_BASE_DOMAIN
    return f"{target_subdomain(subdomain, target)}.{domain}/*"


def find_secret_like_keys(env_vars: Dict[str, Any]) -> List[str]:
    return sorted(key for key in env_vars if SECRET_NAME_PATTERN.search(key))


@dataclass
class WorkerSecretSet:
    """
    Values shipped with a worker deployment.

    secrets are uploaded through the secrets endpoint, plain_text become
    script bindings readable by the app.
    """
    secrets: Dict[str, str] = field(default_factory=dict)
    plain_text: Dict[str, str] = field(default_factory=dict)

    def bindings(self) -> List[Dict[str, str]]:
        return [
            {"name": name, "type": "plain_text", "text": value}
            for name, value in sorted(self.plain_text.items())
        ]


def build_secret_set(
    app_id: str,
    owner_id: str,
    user_vars: Optional[Dict[str, Any]] = None,
    environment: Optional[str] = None,
) -> WorkerSecretSet:
    """
    Merge platform secrets with the app's user variables.

    Raises:
        SecretPolicyError: a user variable name looks like a credential
    """
    user_vars = dict(user_vars or {})
    rejected = find_secret_like_keys(user_vars)
    if rejected:
        raise SecretPolicyError(rejected)

    secrets = {
        "SUPABASE_URL": settings.SUPABASE_URL,
        "SUPABASE_SECRET_KEY": settings.SUPABASE_SECRET_KEY,
        "SUPABASE_ANON_KEY": settings.SUPABASE_ANON_KEY,
        "APP_ID": str(app_id),
        "OWNER_ID": str(owner_id),
        "ENVIRONMENT": environment or settings.ENVIRONMENT,
    }
    # Unset platform values are not shipped
    secrets = {key: value for key, value in secrets.items() if value}

    plain_text = {key: str(value) for key, value in user_vars.items()}
    secrets["CUSTOM_VARS"] = json.dumps(plain_text, sort_keys=True)

    return WorkerSecretSet(secrets=secrets, plain_text=plain_text)
