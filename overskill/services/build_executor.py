"""
Build Executor - Runs the npm/vite toolchain against a SourceFileSet

Two variants share one pipeline:
- FastDevelopmentBuilder: `vite build --mode development`, 60s timeout
- ProductionOptimizedBuilder: full `vite build`, 200s timeout, plus a
  pre-pass that strips console calls, debugger statements and comments

Each build runs in its own temporary directory which is removed on every exit
path. A per (app, target) lock keeps two builds of the same app target from
running at the same time.
"""

import asyncio
import json
import re
import shutil
import tempfile
import time
import uuid
from contextlib import asynccontextmanager, contextmanager
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
from dataclasses import dataclass

from overskill.core.config import settings
from overskill.core.exceptions import (
    BuildExecutionError,
    BuildInProgressError,
    BuildOutputMissingError,
    BuildTimeoutError,
)
from overskill.core.logging_config import logger
from overskill.services.source_file_set import SourceFileSet
from overskill.services.worker_optimizer import BuildArtifact, WorkerSizeOptimizer


class BuildMode(Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


PRODUCTION_INTENT = re.compile(r"\b(deploy|deploying|deployment|publish|publishing|production|go live|live)\b", re.IGNORECASE)
PREVIEW_INTENT = re.compile(r"\b(preview|staging|test|testing)\b", re.IGNORECASE)


def select_build_mode(intent: Optional[str]) -> BuildMode:
    """
    Pick the build mode from a free-text request.

    "deploy to production" -> PRODUCTION
    "preview the app"      -> DEVELOPMENT
    anything else          -> DEVELOPMENT
    """
    if intent and PRODUCTION_INTENT.search(intent):
        return BuildMode.PRODUCTION
    if intent and PREVIEW_INTENT.search(intent):
        return BuildMode.DEVELOPMENT
    return BuildMode.DEVELOPMENT


DEFAULT_PACKAGE_JSON = {
    "name": "overskill-app",
    "version": "1.0.0",
    "type": "module",
    "private": True,
    "scripts": {
        "dev": "vite",
        "build": "vite build",
        "build:preview": "vite build --mode development",
        "preview": "vite preview",
    },
    "dependencies": {
        "react": "^18.2.0",
        "react-dom": "^18.2.0",
        "@supabase/supabase-js": "^2.39.0",
    },
    "devDependencies": {
        "@types/react": "^18.2.0",
        "@types/react-dom": "^18.2.0",
        "@vitejs/plugin-react": "^4.2.0",
        "typescript": "^5.3.0",
        "vite": "^5.0.0",
        "tailwindcss": "^3.4.0",
        "autoprefixer": "^10.4.0",
        "postcss": "^8.4.0",
    },
}

REQUIRED_SCRIPTS = {
    "build": "vite build",
    "build:preview": "vite build --mode development",
}


@dataclass
class CommandResult:
    returncode: int
    output: str
    duration_ms: float = 0


@dataclass
class BuildResult:
    """Outcome of one toolchain run"""
    success: bool
    mode: BuildMode
    artifact: Optional[BuildArtifact] = None
    log: str = ""
    timed_out: bool = False
    exit_code: Optional[int] = None
    duration_ms: float = 0
    workspace_dir: Optional[str] = None  # For stripping temp paths from logs


class CommandRunner:
    """Runs a toolchain command and captures combined stdout/stderr"""

    async def run(self, args: Sequence[str], cwd: Path, timeout: float) -> CommandResult:
        command = " ".join(args)
        start = time.time()
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise BuildExecutionError(command, str(e))

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=max(timeout, 0.001))
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"[BuildExecutor] Killed '{command}' after {timeout:.0f}s")
            raise BuildTimeoutError(command, timeout)

        return CommandResult(
            returncode=process.returncode,
            output=stdout.decode("utf-8", errors="replace") if stdout else "",
            duration_ms=(time.time() - start) * 1000,
        )


class BuildLockRegistry:
    """One asyncio lock per (app_id, target)"""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        # holders plus waiters; the lock is dropped when this reaches zero
        self._users: Dict[Tuple[str, str], int] = {}

    def is_locked(self, app_id: str, target: str) -> bool:
        lock = self._locks.get((app_id, target))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, app_id: str, target: str, wait: bool = True):
        """Queue behind a running build, or reject when wait is False"""
        key = (app_id, target)
        lock = self._locks.setdefault(key, asyncio.Lock())
        if not wait and lock.locked():
            raise BuildInProgressError(app_id, target)

        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                self._locks.pop(key, None)


@contextmanager
def build_workspace(prefix: str = "overskill-build-") -> Iterator[Path]:
    """Temporary build directory, removed on every exit path"""
    workspace = Path(tempfile.mkdtemp(prefix=prefix))
    try:
        yield workspace
    finally:
        shutil.rmtree(workspace, ignore_errors=True)
        logger.debug(f"[BuildExecutor] Removed workspace {workspace}")


# ----------------------------------------------------------------------
# Production source pre-pass
# ----------------------------------------------------------------------

_CONSOLE_CALL = re.compile(r"(?<![\w$.])console\s*\.\s*\w+\s*\(")
_DEBUGGER = re.compile(r"(^|[;{}])([ \t]*)debugger\s*;?", re.MULTILINE)
STRIPPABLE_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs")


def _matching_paren(source: str, open_index: int) -> Optional[int]:
    depth = 0
    quote = None
    i = open_index
    while i < len(source):
        ch = source[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in "\"'`":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return None


def strip_console_calls(source: str) -> str:
    """
    Remove console.* calls.

    Calls in statement position are deleted with their semicolon; calls used
    as expressions become `void 0` so the surrounding code still parses.
    """
    out: List[str] = []
    pos = 0
    while True:
        match = _CONSOLE_CALL.search(source, pos)
        if not match:
            break
        close = _matching_paren(source, match.end() - 1)
        if close is None:
            break
        end = close + 1
        before = source[:match.start()].rstrip()
        if not before or before[-1] in ";{}":
            trailing = re.match(r"[ \t]*;", source[end:])
            if trailing:
                end += trailing.end()
            replacement = ""
        else:
            replacement = "void 0"
        out.append(source[pos:match.start()])
        out.append(replacement)
        pos = end
    out.append(source[pos:])
    return "".join(out)


def strip_comments(source: str) -> str:
    """Remove // and /* */ comments outside string literals; keeps /*! and @pragma blocks"""
    out: List[str] = []
    i = 0
    n = len(source)
    quote = None
    while i < n:
        ch = source[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(source[i + 1])
                i += 2
                continue
            if ch == quote or (ch == "\n" and quote != "`"):
                quote = None
            i += 1
            continue
        if ch in "\"'`":
            quote = ch
            out.append(ch)
            i += 1
            continue
        if source.startswith("/*", i):
            end = source.find("*/", i + 2)
            end = n if end == -1 else end + 2
            comment = source[i:end]
            if comment.startswith("/*!") or "@" in comment:
                out.append(comment)
            i = end
            continue
        if source.startswith("//", i) and (i == 0 or source[i - 1] in " \t\n"):
            end = source.find("\n", i)
            i = n if end == -1 else end
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def strip_debug_statements(source: str) -> str:
    """Production pre-pass for one script file"""
    stripped = strip_comments(source)
    stripped = strip_console_calls(stripped)
    stripped = _DEBUGGER.sub(r"\1\2", stripped)
    return stripped


# ----------------------------------------------------------------------
# Builders
# ----------------------------------------------------------------------

class BaseBuilder:
    """Shared materialize -> npm install -> npm run build -> collect pipeline"""

    mode: BuildMode = BuildMode.DEVELOPMENT
    build_script: str = "build:preview"

    def __init__(self, runner: Optional[CommandRunner] = None,
                 locks: Optional[BuildLockRegistry] = None,
                 timeout: Optional[float] = None):
        self.runner = runner or CommandRunner()
        self.locks = locks or BuildLockRegistry()
        self.timeout = timeout if timeout is not None else self.default_timeout()

    def default_timeout(self) -> float:
        return settings.DEV_BUILD_TIMEOUT

    def prepare_sources(self, files: Dict[str, str]) -> Dict[str, str]:
        """Hook for mode-specific source rewriting; works on a copy"""
        return files

    async def build(self, files: SourceFileSet, app_id: str, target: str = "preview",
                    build_id: Optional[str] = None, wait: bool = True) -> BuildResult:
        """
        Build the file set.

        Non-zero exits and timeouts return a failed BuildResult carrying the
        raw log. A build that exits cleanly without dist/ raises
        BuildOutputMissingError.
        """
        build_id = build_id or uuid.uuid4().hex[:12]
        start = time.time()
        async with self.locks.hold(app_id, target, wait=wait):
            with build_workspace() as workspace:
                sources = self.prepare_sources(files.to_dict())
                sources = self.ensure_package_json(sources, app_id)
                self.materialize(sources, workspace)
                logger.log_build_event("started", self.mode.value, app_id=app_id, build_id=build_id)

                loop = asyncio.get_running_loop()
                deadline = loop.time() + self.timeout
                log_parts: List[str] = []

                for step in self.commands():
                    remaining = deadline - loop.time()
                    try:
                        if remaining <= 0:
                            raise BuildTimeoutError(" ".join(step), self.timeout)
                        result = await self.runner.run(step, workspace, remaining)
                    except BuildTimeoutError as e:
                        log_parts.append(f"Error: {e.message}")
                        return self._failed(workspace, log_parts, start, timed_out=True)

                    log_parts.append(result.output)
                    if result.returncode != 0:
                        return self._failed(workspace, log_parts, start, exit_code=result.returncode)

                dist = workspace / "dist"
                log = "\n".join(log_parts)
                if not dist.is_dir():
                    logger.error(f"[BuildExecutor] Build for {app_id} produced no dist/ directory")
                    raise BuildOutputMissingError("dist", log)

                assets = self.collect_output(dist)
                artifact = BuildArtifact(
                    assets=assets,
                    entry_script=self.find_entry_script(assets),
                    build_mode=self.mode.value,
                    build_id=build_id,
                )
                duration_ms = (time.time() - start) * 1000
                logger.log_build_event("succeeded", self.mode.value, duration_ms=duration_ms,
                                       app_id=app_id, asset_count=len(assets))
                return BuildResult(
                    success=True,
                    mode=self.mode,
                    artifact=artifact,
                    log=log,
                    exit_code=0,
                    duration_ms=duration_ms,
                    workspace_dir=str(workspace),
                )

    def commands(self) -> List[List[str]]:
        npm = settings.NPM_COMMAND
        return [
            [npm, "install", "--no-audit", "--no-fund"],
            [npm, "run", self.build_script],
        ]

    @staticmethod
    def ensure_package_json(files: Dict[str, str], app_id: str) -> Dict[str, str]:
        """Make sure package.json exists and defines the build scripts"""
        files = dict(files)
        raw = files.get("package.json")
        if raw is None:
            package = json.loads(json.dumps(DEFAULT_PACKAGE_JSON))
            package["name"] = f"app-{app_id}"
        else:
            try:
                package = json.loads(raw)
            except json.JSONDecodeError:
                # npm reports the parse error in the build log
                return files
            if not isinstance(package, dict):
                return files
        scripts = package.setdefault("scripts", {})
        for name, command in REQUIRED_SCRIPTS.items():
            scripts.setdefault(name, command)
        files["package.json"] = json.dumps(package, indent=2)
        return files

    @staticmethod
    def materialize(files: Dict[str, str], workspace: Path) -> None:
        for path, content in files.items():
            target = workspace / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

    @staticmethod
    def collect_output(dist: Path) -> Dict[str, bytes]:
        assets: Dict[str, bytes] = {}
        for file_path in sorted(p for p in dist.rglob("*") if p.is_file()):
            assets[file_path.relative_to(dist).as_posix()] = file_path.read_bytes()
        return assets

    @staticmethod
    def find_entry_script(assets: Dict[str, bytes]) -> Optional[str]:
        index = assets.get("index.html")
        if index:
            match = re.search(rb'<script[^>]*type="module"[^>]*src="/?([^"]+)"', index)
            if match:
                return match.group(1).decode("utf-8", errors="replace")
        for path in assets:
            name = path.rsplit("/", 1)[-1]
            if path.endswith(".js") and WorkerSizeOptimizer.CRITICAL_BUNDLE.match(name):
                return path
        return None

    def _failed(self, workspace: Path, log_parts: List[str], start: float,
                timed_out: bool = False, exit_code: Optional[int] = None) -> BuildResult:
        duration_ms = (time.time() - start) * 1000
        logger.log_build_event("timed out" if timed_out else "failed", self.mode.value,
                               duration_ms=duration_ms, exit_code=exit_code)
        return BuildResult(
            success=False,
            mode=self.mode,
            log="\n".join(log_parts),
            timed_out=timed_out,
            exit_code=exit_code,
            duration_ms=duration_ms,
            workspace_dir=str(workspace),
        )


class FastDevelopmentBuilder(BaseBuilder):
    """Low-optimization build for preview iterations"""

    mode = BuildMode.DEVELOPMENT
    build_script = "build:preview"

    def default_timeout(self) -> float:
        return settings.DEV_BUILD_TIMEOUT


class ProductionOptimizedBuilder(BaseBuilder):
    """Minified build with console/debugger/comment stripping"""

    mode = BuildMode.PRODUCTION
    build_script = "build"

    def default_timeout(self) -> float:
        return settings.PROD_BUILD_TIMEOUT

    def prepare_sources(self, files: Dict[str, str]) -> Dict[str, str]:
        prepared = {}
        stripped_count = 0
        for path, content in files.items():
            name = path.rsplit("/", 1)[-1]
            if path.endswith(STRIPPABLE_EXTENSIONS) and ".config." not in name:
                new_content = strip_debug_statements(content)
                if new_content != content:
                    stripped_count += 1
                prepared[path] = new_content
            else:
                prepared[path] = content
        logger.info(f"[BuildExecutor] Production pre-pass stripped debug code from {stripped_count} files")
        return prepared


class BuildExecutor:
    """Chooses the builder for a mode; all builders share one lock registry"""

    def __init__(self, runner: Optional[CommandRunner] = None,
                 locks: Optional[BuildLockRegistry] = None):
        self.runner = runner or CommandRunner()
        self.locks = locks or BuildLockRegistry()
        self._builders = {
            BuildMode.DEVELOPMENT: FastDevelopmentBuilder(self.runner, self.locks),
            BuildMode.PRODUCTION: ProductionOptimizedBuilder(self.runner, self.locks),
        }

    def builder_for(self, mode: BuildMode) -> BaseBuilder:
        return self._builders[mode]

    async def build(self, files: SourceFileSet, mode: BuildMode, app_id: str,
                    target: str = "preview", build_id: Optional[str] = None,
                    wait: bool = True) -> BuildResult:
        return await self.builder_for(mode).build(files, app_id, target, build_id=build_id, wait=wait)


# Singleton instance
build_executor = BuildExecutor()
