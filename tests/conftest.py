"""
OverSkill Pipeline - Test Configuration and Fixtures
"""
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest
from faker import Faker

# Set testing environment before settings are loaded
os.environ['ENVIRONMENT'] = 'test'
os.environ['LOG_LEVEL'] = 'WARNING'
os.environ['CLOUDFLARE_ACCOUNT_ID'] = 'test-account'
os.environ['CLOUDFLARE_API_TOKEN'] = 'test-cloudflare-token'
os.environ['CLOUDFLARE_ZONE_ID'] = 'test-zone'
os.environ['R2_ACCOUNT_ID'] = 'test-r2-account'
os.environ['R2_ACCESS_KEY_ID'] = 'test-access-key'
os.environ['R2_SECRET_ACCESS_KEY'] = 'test-secret-access-key'
os.environ['SUPABASE_URL'] = 'https://db.supabase.test'
os.environ['SUPABASE_ANON_KEY'] = 'test-anon-key'
os.environ['SUPABASE_SECRET_KEY'] = 'test-service-key'
os.environ['GITHUB_TOKEN'] = 'test-github-token'

from overskill.services.app_store import AppContext, InMemoryAppStore
from overskill.services.build_executor import CommandResult
from overskill.services.source_file_set import SourceFileSet

fake = Faker()


DEFAULT_BUILD_OUTPUT: Dict[str, bytes] = {
    "index.html": b'<!doctype html><html><body><div id="root"></div>'
                  b'<script type="module" src="/assets/main.js"></script></body></html>',
    "assets/main.js": b"import './vendor-3f2a.js'; document.getElementById('root').textContent = 'hi';",
    "assets/main.css": b"body { margin: 0; }",
    "assets/vendor-3f2a.js": b"/* vendor */" + b"v" * 2000,
}


class FakeRunner:
    """
    Stands in for npm. Install always succeeds; the build step hands the
    materialized sources to `check`, which returns a compiler log on failure
    or None to emit DEFAULT_BUILD_OUTPUT into dist/.
    """

    def __init__(self, check: Optional[Callable[[Dict[str, str]], Optional[str]]] = None,
                 outputs: Optional[Dict[str, bytes]] = None,
                 write_output: bool = True):
        self.check = check
        self.outputs = DEFAULT_BUILD_OUTPUT if outputs is None else outputs
        self.write_output = write_output
        self.calls: List[List[str]] = []
        self.scripts: List[str] = []
        self.snapshots: List[Dict[str, str]] = []
        self.workspaces: List[Path] = []

    async def run(self, args, cwd, timeout):
        self.calls.append(list(args))
        if "install" in args:
            return CommandResult(returncode=0, output="added 212 packages in 3s")

        self.scripts.append(args[-1])
        self.workspaces.append(Path(cwd))
        sources = self.read_sources(Path(cwd))
        self.snapshots.append(sources)

        log = self.check(sources) if self.check else None
        if log:
            return CommandResult(returncode=1, output=log)

        if self.write_output:
            for path, content in self.outputs.items():
                target = Path(cwd) / "dist" / path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
        return CommandResult(returncode=0, output="vite v5.0.0 building for production...\n✓ built in 1.2s")

    @property
    def build_count(self) -> int:
        return len(self.scripts)

    @staticmethod
    def read_sources(cwd: Path) -> Dict[str, str]:
        return {
            path.relative_to(cwd).as_posix(): path.read_text(encoding="utf-8")
            for path in sorted(cwd.rglob("*"))
            if path.is_file() and "dist" not in path.relative_to(cwd).parts
        }


@pytest.fixture
def sample_files() -> SourceFileSet:
    """A minimal React app"""
    return SourceFileSet({
        "index.html": '<!doctype html><html><body><div id="root"></div>'
                      '<script type="module" src="/src/main.tsx"></script></body></html>',
        "src/main.tsx": "import { createRoot } from 'react-dom/client';\n"
                        "import App from './App';\n\n"
                        "createRoot(document.getElementById('root')!).render(<App />);\n",
        "src/App.tsx": "export default function App() {\n"
                       "  return <h1>Hello</h1>;\n"
                       "}\n",
    })


@pytest.fixture
def make_app() -> Callable[..., AppContext]:
    """Factory for AppContext with a valid subdomain"""
    def _make(**overrides) -> AppContext:
        values = {
            "app_id": str(fake.random_int(min=1, max=99999)),
            "owner_id": str(fake.random_int(min=1, max=99999)),
            "subdomain": "todo-app",
            "name": fake.catch_phrase(),
        }
        values.update(overrides)
        return AppContext(**values)
    return _make


@pytest.fixture
def store() -> InMemoryAppStore:
    return InMemoryAppStore()
