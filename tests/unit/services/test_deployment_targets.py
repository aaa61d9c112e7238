"""
Unit Tests for deployment target naming and secret policy
"""
import json

import pytest

from overskill.core.exceptions import InvalidSubdomainError, SecretPolicyError
from overskill.services.deployment_targets import (
    DeploymentTarget,
    WorkerSecretSet,
    build_secret_set,
    find_secret_like_keys,
    route_pattern,
    sanitize_subdomain,
    target_url,
    validate_subdomain,
    worker_name,
)


class TestNaming:
    """Test worker names and URLs per target"""

    @pytest.mark.parametrize("target,expected", [
        (DeploymentTarget.PREVIEW, "preview-app-42"),
        (DeploymentTarget.STAGING, "staging-app-42"),
        (DeploymentTarget.PRODUCTION, "app-42"),
    ])
    def test_worker_name(self, target, expected):
        assert worker_name("42", target) == expected

    def test_worker_name_is_lowercase(self):
        assert worker_name("AbC9", DeploymentTarget.PREVIEW) == "preview-app-abc9"

    @pytest.mark.parametrize("target,expected", [
        (DeploymentTarget.PREVIEW, "https://preview--todo-app.overskill.app"),
        (DeploymentTarget.STAGING, "https://staging--todo-app.overskill.app"),
        (DeploymentTarget.PRODUCTION, "https://todo-app.overskill.app"),
    ])
    def test_target_url(self, target, expected):
        assert target_url("todo-app", target) == expected

    def test_route_pattern(self):
        assert route_pattern("todo-app", DeploymentTarget.STAGING) == "staging--todo-app.overskill.app/*"

    def test_custom_base_domain(self):
        assert target_url("shop", DeploymentTarget.PRODUCTION, base_domain="example.dev") == "https://shop.example.dev"

    def test_only_production_requires_production_build(self):
        assert DeploymentTarget.PRODUCTION.requires_production_build is True
        assert DeploymentTarget.STAGING.requires_production_build is False
        assert DeploymentTarget.PREVIEW.requires_production_build is False


class TestSubdomains:
    """Test subdomain validation"""

    def test_sanitize(self):
        assert sanitize_subdomain("My Cool App!!") == "my-cool-app"

    def test_sanitize_truncates_to_label_length(self):
        assert len(sanitize_subdomain("a" * 100)) == 63

    @pytest.mark.parametrize("value", ["", "-bad", "bad-", "Upper", "under_score", "a" * 64])
    def test_invalid(self, value):
        with pytest.raises(InvalidSubdomainError):
            validate_subdomain(value)

    def test_prefixed_label_must_fit(self):
        label = "a" * 60

        assert target_url(label, DeploymentTarget.PRODUCTION).startswith("https://aaa")
        with pytest.raises(InvalidSubdomainError):
            target_url(label, DeploymentTarget.PREVIEW)


class TestSecretSet:
    """Test platform secrets and user variables"""

    def test_secret_like_user_variables_are_rejected(self):
        with pytest.raises(SecretPolicyError) as exc_info:
            build_secret_set("1", "7", {"STRIPE_SECRET_KEY": "sk_live", "db_password": "x", "THEME": "dark"})

        assert exc_info.value.details["keys"] == ["STRIPE_SECRET_KEY", "db_password"]

    @pytest.mark.parametrize("key", ["GITHUB_TOKEN", "OPENAI_API_KEY", "private_key_pem", "GcpCredentials"])
    def test_secret_name_patterns(self, key):
        assert find_secret_like_keys({key: "v"}) == [key]

    def test_platform_secrets_and_custom_vars(self):
        secret_set = build_secret_set("42", "7", {"THEME": "dark", "MAX_ITEMS": 10}, environment="staging")

        assert secret_set.secrets["APP_ID"] == "42"
        assert secret_set.secrets["OWNER_ID"] == "7"
        assert secret_set.secrets["ENVIRONMENT"] == "staging"
        assert secret_set.secrets["SUPABASE_URL"] == "https://db.supabase.test"
        assert json.loads(secret_set.secrets["CUSTOM_VARS"]) == {"MAX_ITEMS": "10", "THEME": "dark"}
        assert secret_set.plain_text == {"THEME": "dark", "MAX_ITEMS": "10"}

    def test_bindings_are_plain_text_and_sorted(self):
        secret_set = WorkerSecretSet(plain_text={"b": "2", "a": "1"})

        assert secret_set.bindings() == [
            {"name": "a", "type": "plain_text", "text": "1"},
            {"name": "b", "type": "plain_text", "text": "2"},
        ]

    def test_no_user_variables(self):
        secret_set = build_secret_set("42", "7")

        assert secret_set.plain_text == {}
        assert secret_set.secrets["CUSTOM_VARS"] == "{}"
