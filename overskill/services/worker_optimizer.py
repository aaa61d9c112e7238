"""
Worker Size Optimizer - Splits build output between the worker and R2

Cloudflare rejects worker scripts over 1MB. Critical assets (entry HTML, the
main JS/CSS bundle, critical.* files, web fonts) are embedded in the script;
everything else is offloaded to object storage and referenced by CDN URL.

The embedded set is checked against a ceiling below the platform limit that
leaves room for the wrapper script itself. Exceeding it raises
SizeViolationError. Assets are never dropped silently.
"""

import base64
import json
import posixpath
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, field

from overskill.core.config import settings
from overskill.core.exceptions import SizeViolationError
from overskill.core.logging_config import logger


CONTENT_TYPES: Dict[str, str] = {
    ".html": "text/html; charset=utf-8",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".css": "text/css",
    ".json": "application/json",
    ".map": "application/json",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".txt": "text/plain",
    ".webmanifest": "application/manifest+json",
}


def content_type_for(path: str) -> str:
    ext = posixpath.splitext(path.lower())[1]
    return CONTENT_TYPES.get(ext, "application/octet-stream")


def format_bytes(size: int) -> str:
    """Human readable byte count: 0 B, 1.5 KB, 2.0 MB"""
    if size == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 1)} {units[unit]}"


@dataclass
class OptimizerPolicy:
    """Size policy; defaults come from settings"""
    embed_ceiling: int = field(default_factory=lambda: settings.WORKER_EMBED_CEILING)
    critical_asset_max_size: int = field(default_factory=lambda: settings.CRITICAL_ASSET_MAX_SIZE)
    platform_limit: int = field(default_factory=lambda: settings.WORKER_PLATFORM_LIMIT)


@dataclass
class BuildArtifact:
    """Output of one successful build"""
    assets: Dict[str, bytes]
    entry_script: Optional[str] = None
    build_mode: str = "development"
    build_id: str = ""

    @property
    def total_embedded_size(self) -> int:
        """Bytes the artifact would take if every asset were embedded"""
        return sum(len(content) for content in self.assets.values())


@dataclass
class OffloadedAsset:
    content: bytes
    content_type: str
    size: int


@dataclass
class OptimizedPackage:
    """The unit handed to the deploy API"""
    worker_script: str
    worker_size: int
    embedded_assets: List[str]
    embedded_size: int
    offloaded_assets: Dict[str, OffloadedAsset]
    cdn_urls: Dict[str, str]
    oversized_critical: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


WORKER_TEMPLATE = """// OverSkill worker for __APP_LABEL__
// Generated: __GENERATED_AT__
// Embedded: __EMBEDDED_COUNT__ files, offloaded: __OFFLOADED_COUNT__ files

const CODE_FILES = __CODE_FILES__;

const BINARY_FILES = __BINARY_FILES__;

const ASSET_URLS = __ASSET_URLS__;

const CONTENT_TYPES = __CONTENT_TYPES__;

export default {
  async fetch(request, env, ctx) {
    const url = new URL(request.url);
    const pathname = url.pathname;

    if (pathname.startsWith('/api/')) {
      return handleApiRequest(request, env);
    }

    const cleanPath = pathname === '/' ? 'index.html' : pathname.slice(1);

    if (ASSET_URLS[cleanPath]) {
      return Response.redirect(ASSET_URLS[cleanPath], 301);
    }

    if (cleanPath === 'index.html') {
      return serveIndex(env);
    }

    if (CODE_FILES[cleanPath] !== undefined) {
      return new Response(CODE_FILES[cleanPath], {
        headers: {
          'Content-Type': CONTENT_TYPES[cleanPath] || 'text/plain',
          'Cache-Control': 'public, max-age=86400',
          'Access-Control-Allow-Origin': '*'
        }
      });
    }

    if (BINARY_FILES[cleanPath] !== undefined) {
      const bytes = Uint8Array.from(atob(BINARY_FILES[cleanPath]), c => c.charCodeAt(0));
      return new Response(bytes, {
        headers: {
          'Content-Type': CONTENT_TYPES[cleanPath] || 'application/octet-stream',
          'Cache-Control': 'public, max-age=31536000, immutable'
        }
      });
    }

    // SPA routing: unknown paths render the app shell
    return serveIndex(env);
  }
};

function serveIndex(env) {
  const indexHtml = CODE_FILES['index.html'];
  if (!indexHtml) {
    return new Response('Not found', { status: 404 });
  }
  const envScript = `<script>window.ENV = ${JSON.stringify(getPublicEnvVars(env))};</script>`;
  const html = indexHtml.includes('</head>')
    ? indexHtml.replace('</head>', envScript + '</head>')
    : envScript + indexHtml;
  return new Response(html, {
    headers: {
      'Content-Type': 'text/html; charset=utf-8',
      'Cache-Control': 'no-cache'
    }
  });
}

function getPublicEnvVars(env) {
  const publicVars = {};
  const publicKeys = ['APP_ID', 'ENVIRONMENT', 'API_BASE_URL', 'SUPABASE_URL', 'SUPABASE_ANON_KEY'];
  for (const key in env) {
    if (publicKeys.includes(key) || key.startsWith('PUBLIC_') || key.startsWith('VITE_')) {
      publicVars[key] = env[key];
    }
  }
  return publicVars;
}

async function handleApiRequest(request, env) {
  const path = new URL(request.url).pathname;
  if (path.startsWith('/api/supabase')) {
    const supabaseUrl = env.SUPABASE_URL;
    const supabaseKey = env.SUPABASE_SECRET_KEY || env.SUPABASE_ANON_KEY;
    if (!supabaseUrl || !supabaseKey) {
      return new Response(JSON.stringify({ error: 'Database not configured' }), {
        status: 503,
        headers: { 'Content-Type': 'application/json' }
      });
    }
    const proxyRequest = new Request(supabaseUrl + path.replace('/api/supabase', ''), request);
    proxyRequest.headers.set('apikey', supabaseKey);
    proxyRequest.headers.set('Authorization', `Bearer ${supabaseKey}`);
    return fetch(proxyRequest);
  }
  return new Response(JSON.stringify({ error: 'API endpoint not found' }), {
    status: 404,
    headers: { 'Content-Type': 'application/json' }
  });
}
"""


class WorkerSizeOptimizer:
    """Partitions build assets into embedded and offloaded sets"""

    CRITICAL_BUNDLE = re.compile(r"^(main|index|app)([.-][\w-]+)?\.(js|mjs|css)$")
    CRITICAL_NAMED = re.compile(r"^critical(\.|-|$)")
    FONT_EXTENSIONS = (".woff", ".woff2")

    # Utilization of the platform limit, in percent
    COMPLIANCE_LEVELS: List[Tuple[float, str]] = [
        (60.0, "healthy"),
        (80.0, "warning"),
        (95.0, "critical"),
    ]

    def __init__(self, policy: Optional[OptimizerPolicy] = None):
        self.policy = policy or OptimizerPolicy()

    def is_critical(self, path: str) -> bool:
        lowered = path.lower().lstrip("/")
        name = posixpath.basename(lowered)
        if lowered == "index.html":
            return True
        if self.CRITICAL_BUNDLE.match(name) or self.CRITICAL_NAMED.match(name):
            return True
        return name.endswith(self.FONT_EXTENSIONS)

    def partition(self, assets: Dict[str, bytes]) -> Tuple[Dict[str, bytes], Dict[str, bytes], List[str]]:
        """
        Returns (embedded, offloaded, oversized_critical).

        Oversized critical assets stay embedded; they are reported so the
        ceiling check and recommendations can name them.
        """
        embedded: Dict[str, bytes] = {}
        offloaded: Dict[str, bytes] = {}
        oversized: List[str] = []
        for path, content in assets.items():
            if self.is_critical(path):
                embedded[path] = content
                if len(content) > self.policy.critical_asset_max_size:
                    oversized.append(path)
            else:
                offloaded[path] = content
        return embedded, offloaded, oversized

    def optimize(self, artifact: BuildArtifact, cdn_url_for: Callable[[str], str],
                 app_label: str = "app") -> OptimizedPackage:
        """
        Build the worker package for an artifact.

        Args:
            artifact: build output
            cdn_url_for: maps an offloaded asset path to the URL it will be served from
            app_label: shown in the generated script header

        Raises:
            SizeViolationError: embedded assets exceed the ceiling, or the
                rendered script exceeds the platform limit
        """
        embedded, offloaded, oversized = self.partition(artifact.assets)
        if oversized:
            logger.warning(
                f"[WorkerSizeOptimizer] Critical assets over {format_bytes(self.policy.critical_asset_max_size)} "
                f"kept in worker: {', '.join(oversized)}"
            )

        embedded_size = sum(len(c) for c in embedded.values())
        if embedded_size > self.policy.embed_ceiling:
            raise SizeViolationError(
                embedded_size,
                self.policy.embed_ceiling,
                message=(
                    f"Embedded assets total {format_bytes(embedded_size)}, over the "
                    f"{format_bytes(self.policy.embed_ceiling)} worker ceiling"
                ),
                assets=list(embedded.keys()),
            )

        cdn_urls = {path: cdn_url_for(path) for path in offloaded}
        script = self.render_worker_script(embedded, cdn_urls, app_label)
        worker_size = len(script.encode("utf-8"))
        if worker_size > self.policy.platform_limit:
            raise SizeViolationError(
                worker_size,
                self.policy.platform_limit,
                message=(
                    f"Worker script {format_bytes(worker_size)} exceeds Cloudflare limit of "
                    f"{format_bytes(self.policy.platform_limit)}"
                ),
                assets=list(embedded.keys()),
            )

        package = OptimizedPackage(
            worker_script=script,
            worker_size=worker_size,
            embedded_assets=list(embedded.keys()),
            embedded_size=embedded_size,
            offloaded_assets={
                path: OffloadedAsset(content=content, content_type=content_type_for(path), size=len(content))
                for path, content in offloaded.items()
            },
            cdn_urls=cdn_urls,
            oversized_critical=oversized,
        )
        package.recommendations = self.recommendations(package, artifact.total_embedded_size)

        compliance = self.monitor_size_compliance(worker_size)
        logger.info(
            f"[WorkerSizeOptimizer] Optimized {app_label}: worker={format_bytes(worker_size)} "
            f"({compliance['utilization_percent']}%, {compliance['status']}), "
            f"embedded={len(embedded)}, offloaded={len(offloaded)}"
        )
        return package

    def render_worker_script(self, embedded: Dict[str, bytes], cdn_urls: Dict[str, str],
                             app_label: str = "app") -> str:
        text_files: Dict[str, str] = {}
        binary_files: Dict[str, str] = {}
        for path, content in embedded.items():
            key = path.lstrip("/")
            try:
                text_files[key] = content.decode("utf-8")
            except UnicodeDecodeError:
                binary_files[key] = base64.b64encode(content).decode("ascii")

        content_types = {path.lstrip("/"): content_type_for(path) for path in embedded}
        asset_urls = {path.lstrip("/"): url for path, url in cdn_urls.items()}

        replacements = {
            "__APP_LABEL__": app_label,
            "__GENERATED_AT__": datetime.utcnow().isoformat() + "Z",
            "__EMBEDDED_COUNT__": str(len(embedded)),
            "__OFFLOADED_COUNT__": str(len(cdn_urls)),
            "__CODE_FILES__": json.dumps(text_files, ensure_ascii=False),
            "__BINARY_FILES__": json.dumps(binary_files),
            "__ASSET_URLS__": json.dumps(asset_urls),
            "__CONTENT_TYPES__": json.dumps(content_types),
        }
        # Single pass: substituted content is never rescanned for placeholders
        return re.sub(r"__[A-Z_]+__", lambda m: replacements.get(m.group(0), m.group(0)), WORKER_TEMPLATE)

    def monitor_size_compliance(self, worker_size: int) -> Dict[str, Any]:
        """Classify a worker size against the platform limit"""
        limit = self.policy.platform_limit
        utilization = round(worker_size / limit * 100, 1)
        status = "violation"
        for threshold, level in self.COMPLIANCE_LEVELS:
            if utilization <= threshold:
                status = level
                break
        return {
            "current_size": worker_size,
            "size_limit": limit,
            "utilization_percent": utilization,
            "status": status,
            "bytes_remaining": limit - worker_size,
            "needs_optimization": utilization > 80,
        }

    def analyze_size_requirements(self, assets: Dict[str, bytes]) -> Dict[str, Any]:
        """Report sizes by criticality before a build is packaged"""
        analysis: Dict[str, Any] = {
            "total_size": 0,
            "critical_size": 0,
            "non_critical_size": 0,
            "oversized_assets": [],
            "recommendations": [],
        }
        for path, content in assets.items():
            size = len(content)
            analysis["total_size"] += size
            if self.is_critical(path):
                analysis["critical_size"] += size
                if size > self.policy.critical_asset_max_size:
                    analysis["oversized_assets"].append({"path": path, "size": size})
            else:
                analysis["non_critical_size"] += size

        if analysis["total_size"] > self.policy.embed_ceiling:
            analysis["recommendations"].append("Requires R2 offloading of non-critical assets")
        if analysis["critical_size"] > self.policy.embed_ceiling:
            analysis["recommendations"].append("Critical assets too large - requires code splitting")
        return analysis

    def recommendations(self, package: OptimizedPackage, original_size: int) -> List[str]:
        notes = []
        if package.embedded_size > self.policy.embed_ceiling * 0.8:
            percent = round(package.embedded_size / self.policy.embed_ceiling * 100, 1)
            notes.append(f"Consider further asset optimization - worker at {percent}% capacity")
        if len(package.offloaded_assets) > 20:
            notes.append(f"High R2 asset count ({len(package.offloaded_assets)}) may impact cold start performance")
        if package.oversized_critical:
            notes.append(f"Split oversized critical assets: {', '.join(package.oversized_critical)}")
        if original_size > 0:
            savings = round((original_size - package.embedded_size) / original_size * 100, 1)
            notes.append(f"Offloading kept {savings}% of build output out of the worker")
        return notes


# Singleton instance
worker_size_optimizer = WorkerSizeOptimizer()
