"""
Unit Tests for the Build Executor

Most tests use the FakeRunner from conftest in place of npm. The
CommandRunner tests spawn the current Python interpreter as a stand-in
toolchain process.
"""
import asyncio
import json
import sys

import pytest

from conftest import FakeRunner
from overskill.core.exceptions import BuildExecutionError, BuildInProgressError, BuildOutputMissingError, BuildTimeoutError
from overskill.services.build_executor import (
    BuildExecutor,
    BuildLockRegistry,
    BuildMode,
    CommandRunner,
    FastDevelopmentBuilder,
    ProductionOptimizedBuilder,
    build_workspace,
    select_build_mode,
    strip_comments,
    strip_console_calls,
    strip_debug_statements,
)
from overskill.services.build_error_detector import BuildErrorDetector, ErrorType
from overskill.services.auto_fixer import AutoFixEngine
from overskill.services.source_file_set import SourceFileSet


# ============================================
# Mode selection
# ============================================

class TestSelectBuildMode:
    """Test build mode selection from request text"""

    @pytest.mark.parametrize("intent,mode", [
        ("deploy to production", BuildMode.PRODUCTION),
        ("publish my app", BuildMode.PRODUCTION),
        ("go live now", BuildMode.PRODUCTION),
        ("preview the app", BuildMode.DEVELOPMENT),
        ("build a todo app", BuildMode.DEVELOPMENT),
        ("", BuildMode.DEVELOPMENT),
        (None, BuildMode.DEVELOPMENT),
    ])
    def test_select_build_mode(self, intent, mode):
        assert select_build_mode(intent) == mode

    def test_latest_is_not_live(self):
        assert select_build_mode("show the latest changes") == BuildMode.DEVELOPMENT


# ============================================
# Production pre-pass
# ============================================

class TestDebugStripping:
    """Test console/debugger/comment removal"""

    def test_statement_console_calls_are_removed(self):
        source = "const a = 1;\nconsole.log('a', fn(a));\nrun();"

        assert strip_console_calls(source) == "const a = 1;\n\nrun();"

    def test_expression_console_calls_become_void(self):
        source = "const ok = check() && console.warn('x');"

        assert strip_console_calls(source) == "const ok = check() && void 0;"

    def test_parenthesis_inside_string_argument(self):
        source = "console.log(')');\nnext();"

        assert strip_console_calls(source) == "\nnext();"

    def test_member_named_console_is_kept(self):
        source = "logger.console.log('x');"

        assert strip_console_calls(source) == source

    def test_comments_are_removed_outside_strings(self):
        source = "const url = 'https://x.dev'; // trailing\n/* block */const b = 2;"

        assert strip_comments(source) == "const url = 'https://x.dev'; \nconst b = 2;"

    def test_license_and_pragma_comments_are_kept(self):
        source = "/*! MIT */\n/* @vite-ignore */\nimport(x);"

        assert strip_comments(source) == source

    def test_debugger_statements_are_removed(self):
        source = "function f() {\n  debugger;\n  return 1;\n}"

        stripped = strip_debug_statements(source)

        assert "debugger" not in stripped
        assert "return 1;" in stripped

    def test_production_builder_skips_config_files(self):
        builder = ProductionOptimizedBuilder(runner=FakeRunner())
        files = {
            "src/App.tsx": "console.log('x');\nexport default 1;",
            "vite.config.ts": "console.log('config');",
            "src/index.css": "/* keep */ body {}",
        }

        prepared = builder.prepare_sources(files)

        assert "console" not in prepared["src/App.tsx"]
        assert prepared["vite.config.ts"] == files["vite.config.ts"]
        assert prepared["src/index.css"] == files["src/index.css"]


# ============================================
# Builders
# ============================================

class TestBuilders:
    """Test the build pipeline with a fake toolchain"""

    @pytest.mark.asyncio
    async def test_development_build(self, sample_files):
        runner = FakeRunner()
        builder = FastDevelopmentBuilder(runner=runner)

        result = await builder.build(sample_files, app_id="42")

        assert result.success is True
        assert result.mode == BuildMode.DEVELOPMENT
        assert runner.calls[0][1] == "install"
        assert runner.scripts == ["build:preview"]
        assert sorted(result.artifact.assets) == sorted(["index.html", "assets/main.js", "assets/main.css",
                                                         "assets/vendor-3f2a.js"])
        assert result.artifact.entry_script == "assets/main.js"
        assert result.artifact.build_mode == "development"
        assert result.artifact.build_id

    @pytest.mark.asyncio
    async def test_production_build_uses_build_script(self, sample_files):
        runner = FakeRunner()
        builder = ProductionOptimizedBuilder(runner=runner)

        result = await builder.build(sample_files, app_id="42", build_id="b-1")

        assert result.mode == BuildMode.PRODUCTION
        assert runner.scripts == ["build"]
        assert result.artifact.build_id == "b-1"

    @pytest.mark.asyncio
    async def test_package_json_is_generated(self, sample_files):
        runner = FakeRunner()

        await FastDevelopmentBuilder(runner=runner).build(sample_files, app_id="42")

        package = json.loads(runner.snapshots[0]["package.json"])
        assert package["name"] == "app-42"
        assert package["scripts"]["build:preview"] == "vite build --mode development"

    @pytest.mark.asyncio
    async def test_existing_package_json_gets_missing_scripts(self, sample_files):
        files = sample_files.copy()
        files.add("package.json", json.dumps({"name": "mine", "scripts": {"build": "tsc && vite build"}}))
        runner = FakeRunner()

        await FastDevelopmentBuilder(runner=runner).build(files, app_id="42")

        package = json.loads(runner.snapshots[0]["package.json"])
        assert package["name"] == "mine"
        assert package["scripts"]["build"] == "tsc && vite build"
        assert "build:preview" in package["scripts"]

    @pytest.mark.asyncio
    async def test_failed_build_returns_log(self, sample_files):
        runner = FakeRunner(check=lambda files: "src/App.tsx(2,3): error TS1005: ';' expected.")

        result = await FastDevelopmentBuilder(runner=runner).build(sample_files, app_id="42")

        assert result.success is False
        assert result.exit_code == 1
        assert result.artifact is None
        assert "TS1005" in result.log

    @pytest.mark.asyncio
    async def test_missing_output_raises(self, sample_files):
        runner = FakeRunner(write_output=False)

        with pytest.raises(BuildOutputMissingError) as exc_info:
            await FastDevelopmentBuilder(runner=runner).build(sample_files, app_id="42")

        assert exc_info.value.code == "BUILD_OUTPUT_MISSING"
        assert "built in" in exc_info.value.details["log"]

    @pytest.mark.asyncio
    async def test_workspace_is_removed_on_every_path(self, sample_files):
        ok_runner = FakeRunner()
        failing_runner = FakeRunner(check=lambda files: "boom")
        empty_runner = FakeRunner(write_output=False)

        await FastDevelopmentBuilder(runner=ok_runner).build(sample_files, app_id="1")
        await FastDevelopmentBuilder(runner=failing_runner).build(sample_files, app_id="2")
        with pytest.raises(BuildOutputMissingError):
            await FastDevelopmentBuilder(runner=empty_runner).build(sample_files, app_id="3")

        for runner in (ok_runner, failing_runner, empty_runner):
            assert not runner.workspaces[0].exists()

    @pytest.mark.asyncio
    async def test_timeout_is_a_failed_result(self, sample_files):
        class SlowRunner(FakeRunner):
            async def run(self, args, cwd, timeout):
                if "install" in args:
                    raise BuildTimeoutError(" ".join(args), timeout)
                return await super().run(args, cwd, timeout)

        result = await FastDevelopmentBuilder(runner=SlowRunner(), timeout=5).build(sample_files, app_id="42")

        assert result.success is False
        assert result.timed_out is True
        assert result.log.startswith("Error: ")

    @pytest.mark.asyncio
    async def test_executor_dispatches_by_mode(self, sample_files):
        runner = FakeRunner()
        executor = BuildExecutor(runner=runner)

        await executor.build(sample_files, BuildMode.DEVELOPMENT, app_id="42")
        await executor.build(sample_files, BuildMode.PRODUCTION, app_id="42")

        assert runner.scripts == ["build:preview", "build"]
        assert executor.builder_for(BuildMode.PRODUCTION).locks is executor.locks

    @pytest.mark.asyncio
    async def test_detect_fix_rebuild_round_trip(self):
        """A failed build's log drives a fix that makes the next build pass"""
        files = SourceFileSet({
            "index.html": "<html></html>",
            "src/App.tsx": 'const title = "Hello\nexport default title;\n',
        })

        def check(sources):
            if sources["src/App.tsx"].split("\n")[0].count('"') % 2:
                return "src/App.tsx(1,15): error TS1002: Unterminated string literal."
            return None

        runner = FakeRunner(check=check)
        builder = FastDevelopmentBuilder(runner=runner)

        failed = await builder.build(files, app_id="42")
        errors = BuildErrorDetector(workspace_roots=[]).analyze_text(failed.log,
                                                                       extra_roots=[failed.workspace_dir])
        batch = AutoFixEngine().apply_fixes(errors, files)
        rebuilt = await builder.build(batch.files, app_id="42")

        assert [e.type for e in errors] == [ErrorType.UNTERMINATED_STRING]
        assert batch.applied == 1
        assert rebuilt.success is True


# ============================================
# Locks and workspace
# ============================================

class TestBuildLocks:
    """Test per app/target locking"""

    @pytest.mark.asyncio
    async def test_rejects_concurrent_build_when_not_waiting(self, sample_files):
        locks = BuildLockRegistry()
        builder = FastDevelopmentBuilder(runner=FakeRunner(), locks=locks)

        async with locks.hold("42", "preview"):
            assert locks.is_locked("42", "preview")
            with pytest.raises(BuildInProgressError):
                await builder.build(sample_files, app_id="42", target="preview", wait=False)

        assert not locks.is_locked("42", "preview")

    @pytest.mark.asyncio
    async def test_other_target_is_not_blocked(self, sample_files):
        locks = BuildLockRegistry()
        builder = FastDevelopmentBuilder(runner=FakeRunner(), locks=locks)

        async with locks.hold("42", "preview"):
            result = await builder.build(sample_files, app_id="42", target="staging", wait=False)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_waiting_build_queues_behind_running_one(self):
        locks = BuildLockRegistry()
        order = []

        async def hold(name, delay):
            async with locks.hold("42", "preview"):
                order.append(f"{name}-start")
                await asyncio.sleep(delay)
                order.append(f"{name}-end")

        await asyncio.gather(hold("first", 0.05), hold("second", 0))

        assert order == ["first-start", "first-end", "second-start", "second-end"]

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self):
        locks = BuildLockRegistry()

        async def hold(app_id, delay):
            async with locks.hold(app_id, "preview"):
                await asyncio.sleep(delay)

        await asyncio.gather(hold("42", 0.02), hold("42", 0), hold("43", 0))

        assert locks._locks == {}
        assert locks._users == {}

    @pytest.mark.asyncio
    async def test_lock_survives_while_a_build_is_waiting(self):
        locks = BuildLockRegistry()
        first_released = asyncio.Event()

        async def second():
            async with locks.hold("42", "preview"):
                assert first_released.is_set()

        async with locks.hold("42", "preview"):
            waiter = asyncio.create_task(second())
            await asyncio.sleep(0)
            first_released.set()

        assert ("42", "preview") in locks._locks
        await waiter
        assert not locks.is_locked("42", "preview")
        assert locks._locks == {}

    def test_build_workspace_is_removed(self):
        with build_workspace() as workspace:
            (workspace / "file.txt").write_text("x")
            assert workspace.exists()

        assert not workspace.exists()

    def test_build_workspace_is_removed_after_error(self):
        with pytest.raises(RuntimeError):
            with build_workspace() as workspace:
                raise RuntimeError("boom")

        assert not workspace.exists()


# ============================================
# CommandRunner
# ============================================

@pytest.mark.slow
class TestCommandRunner:
    """Test the real subprocess runner"""

    @pytest.mark.asyncio
    async def test_captures_output_and_exit_code(self, tmp_path):
        result = await CommandRunner().run(
            [sys.executable, "-c", "import sys; print('built'); sys.exit(3)"], tmp_path, timeout=30
        )

        assert result.returncode == 3
        assert "built" in result.output

    @pytest.mark.asyncio
    async def test_kills_process_on_timeout(self, tmp_path):
        with pytest.raises(BuildTimeoutError):
            await CommandRunner().run([sys.executable, "-c", "import time; time.sleep(5)"], tmp_path, timeout=0.2)

    @pytest.mark.asyncio
    async def test_missing_executable(self, tmp_path):
        with pytest.raises(BuildExecutionError) as exc_info:
            await CommandRunner().run(["definitely-not-a-real-npm"], tmp_path, timeout=5)

        assert exc_info.value.details["command"] == "definitely-not-a-real-npm"
