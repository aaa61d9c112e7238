"""
Unit Tests for WorkerSizeOptimizer
"""
import pytest

from overskill.core.exceptions import SizeViolationError
from overskill.services.worker_optimizer import (
    BuildArtifact,
    OptimizerPolicy,
    WorkerSizeOptimizer,
    content_type_for,
    format_bytes,
)

KB = 1000


def cdn(path):
    return f"https://assets.test/apps/1/b1/{path}"


@pytest.fixture
def optimizer():
    return WorkerSizeOptimizer(OptimizerPolicy(embed_ceiling=900_000, critical_asset_max_size=50_000,
                                               platform_limit=1_000_000))


class TestCriticalAssets:
    """Test the critical asset rules"""

    @pytest.mark.parametrize("path", [
        "index.html",
        "/index.html",
        "assets/main.js",
        "assets/index-4f9c2a.js",
        "assets/app.css",
        "critical.css",
        "fonts/inter.woff2",
    ])
    def test_critical(self, optimizer, path):
        assert optimizer.is_critical(path) is True

    @pytest.mark.parametrize("path", [
        "assets/vendor.js",
        "assets/chunk-2.js",
        "images/hero.png",
        "pages/index.html",
        "assets/main.js.map",
    ])
    def test_not_critical(self, optimizer, path):
        assert optimizer.is_critical(path) is False


class TestOptimize:
    """Test packaging a build"""

    def test_splits_vendor_bundles_out(self, optimizer):
        """Scenario: small critical set, large vendor chunks"""
        artifact = BuildArtifact(assets={
            "index.html": b"<html>" + b"h" * (10 * KB - 6),
            "main.js": b"m" * (40 * KB),
            "vendor.js": b"/*VENDOR*/" + b"v" * (600 * KB),
            "chunk-2.js": b"c" * (500 * KB),
        })

        package = optimizer.optimize(artifact, cdn)

        assert sorted(package.embedded_assets) == ["index.html", "main.js"]
        assert sorted(package.offloaded_assets) == ["chunk-2.js", "vendor.js"]
        assert package.embedded_size == 50 * KB
        assert package.worker_size < 1_000_000
        assert "/*VENDOR*/" not in package.worker_script
        assert package.cdn_urls["vendor.js"] == cdn("vendor.js")
        assert cdn("vendor.js") in package.worker_script

    def test_offloaded_assets_carry_content_type(self, optimizer):
        artifact = BuildArtifact(assets={"index.html": b"<html></html>", "images/logo.svg": b"<svg/>"})

        package = optimizer.optimize(artifact, cdn)

        logo = package.offloaded_assets["images/logo.svg"]
        assert logo.content_type == "image/svg+xml"
        assert logo.size == 6
        assert logo.content == b"<svg/>"

    def test_binary_critical_asset_is_base64_embedded(self, optimizer):
        artifact = BuildArtifact(assets={"index.html": b"<html></html>", "fonts/inter.woff2": b"\x00\xff\x10"})

        package = optimizer.optimize(artifact, cdn)

        assert "fonts/inter.woff2" in package.embedded_assets
        assert '"fonts/inter.woff2": "AP8Q"' in package.worker_script

    def test_embedded_ceiling_violation(self, optimizer):
        artifact = BuildArtifact(assets={
            "index.html": b"h" * (10 * KB),
            "assets/main.js": b"m" * (950 * KB),
        })

        with pytest.raises(SizeViolationError) as exc_info:
            optimizer.optimize(artifact, cdn)

        assert exc_info.value.size == 960 * KB
        assert exc_info.value.limit == 900_000
        assert "assets/main.js" in exc_info.value.details["assets"]

    def test_oversized_critical_asset_stays_embedded(self, optimizer):
        artifact = BuildArtifact(assets={"index.html": b"<html></html>", "assets/main.js": b"m" * (120 * KB)})

        package = optimizer.optimize(artifact, cdn)

        assert package.oversized_critical == ["assets/main.js"]
        assert "assets/main.js" in package.embedded_assets

    def test_rendered_script_over_platform_limit(self):
        optimizer = WorkerSizeOptimizer(OptimizerPolicy(embed_ceiling=900_000, critical_asset_max_size=50_000,
                                                        platform_limit=1_000))
        artifact = BuildArtifact(assets={"index.html": b"<html></html>"})

        with pytest.raises(SizeViolationError) as exc_info:
            optimizer.optimize(artifact, cdn)

        assert exc_info.value.limit == 1_000

    def test_placeholders_in_asset_content_are_not_expanded(self, optimizer):
        artifact = BuildArtifact(assets={"index.html": b"<p>__ASSET_URLS__</p>"})

        package = optimizer.optimize(artifact, cdn)

        assert "<p>__ASSET_URLS__</p>" in package.worker_script


class TestSizeReports:
    """Test compliance and analysis reports"""

    @pytest.mark.parametrize("size,status", [
        (500_000, "healthy"),
        (700_000, "warning"),
        (900_000, "critical"),
        (990_000, "violation"),
    ])
    def test_compliance_status(self, optimizer, size, status):
        assert optimizer.monitor_size_compliance(size)["status"] == status

    def test_compliance_fields(self, optimizer):
        report = optimizer.monitor_size_compliance(900_000)

        assert report["utilization_percent"] == 90.0
        assert report["bytes_remaining"] == 100_000
        assert report["needs_optimization"] is True

    def test_analyze_size_requirements(self, optimizer):
        analysis = optimizer.analyze_size_requirements({
            "index.html": b"h" * 1000,
            "assets/main.js": b"m" * 60_000,
            "assets/vendor.js": b"v" * 900_000,
        })

        assert analysis["total_size"] == 961_000
        assert analysis["critical_size"] == 61_000
        assert analysis["non_critical_size"] == 900_000
        assert analysis["oversized_assets"] == [{"path": "assets/main.js", "size": 60_000}]
        assert "Requires R2 offloading of non-critical assets" in analysis["recommendations"]


class TestHelpers:
    """Test formatting helpers"""

    def test_format_bytes(self):
        assert format_bytes(0) == "0 B"
        assert format_bytes(512) == "512.0 B"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(2 * 1024 * 1024) == "2.0 MB"

    def test_content_type_for(self):
        assert content_type_for("assets/main.js") == "application/javascript"
        assert content_type_for("INDEX.HTML") == "text/html; charset=utf-8"
        assert content_type_for("data.bin") == "application/octet-stream"
