"""
Build Error Detector - Rule-based classification of compiler and bundler logs

Turns raw build output (GitHub Actions logs, local vite/tsc output) into a
list of located, classified BuildError records. Pure text processing, no I/O.

Only errors that map onto the fixed taxonomy are returned. Unknown TypeScript
codes and unrecognized lines are dropped so that the fix engine and the user
only ever see actionable errors.
"""

import re
import posixpath
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple, Union
from dataclasses import dataclass, field

from overskill.core.config import settings
from overskill.core.logging_config import logger


class ErrorType(Enum):
    """Fixed build error taxonomy"""
    # JSX structure
    JSX_UNCLOSED_TAG = "jsx_unclosed_tag"
    JSX_TAG_MISMATCH = "jsx_tag_mismatch"
    JSX_EXPRESSION_ERROR = "jsx_expression_error"
    JSX_SYNTAX_ERROR = "jsx_syntax_error"

    # Syntax
    UNTERMINATED_STRING = "unterminated_string"
    UNEXPECTED_TOKEN = "unexpected_token"
    MISSING_PARENTHESIS = "missing_parenthesis"
    MISSING_SEMICOLON = "missing_semicolon"

    # Imports and names
    MISSING_IMPORT = "missing_import"
    MODULE_NOT_FOUND = "module_not_found"
    PROPERTY_NOT_FOUND = "property_not_found"
    UNDEFINED_VARIABLE = "undefined_variable"
    TYPE_MISMATCH = "type_mismatch"

    # Styles
    CSS_SYNTAX_ERROR = "css_syntax_error"
    INVALID_TAILWIND_CLASS = "invalid_tailwind_class"

    # Dependencies
    DEPENDENCY_RESOLUTION_ERROR = "dependency_resolution_error"
    DEPENDENCY_CONFLICT = "dependency_conflict"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# type -> (severity, auto_fixable)
ERROR_TAXONOMY: Dict[ErrorType, Tuple[Severity, bool]] = {
    ErrorType.JSX_UNCLOSED_TAG: (Severity.HIGH, True),
    ErrorType.JSX_TAG_MISMATCH: (Severity.HIGH, True),
    ErrorType.JSX_EXPRESSION_ERROR: (Severity.HIGH, True),
    ErrorType.UNTERMINATED_STRING: (Severity.HIGH, True),
    ErrorType.UNEXPECTED_TOKEN: (Severity.HIGH, True),
    ErrorType.MISSING_PARENTHESIS: (Severity.HIGH, True),
    ErrorType.MISSING_SEMICOLON: (Severity.HIGH, True),
    ErrorType.MISSING_IMPORT: (Severity.MEDIUM, True),
    ErrorType.MODULE_NOT_FOUND: (Severity.HIGH, False),
    ErrorType.PROPERTY_NOT_FOUND: (Severity.MEDIUM, False),
    ErrorType.UNDEFINED_VARIABLE: (Severity.MEDIUM, False),  # hooks only, see _is_auto_fixable
    ErrorType.TYPE_MISMATCH: (Severity.MEDIUM, False),
    ErrorType.CSS_SYNTAX_ERROR: (Severity.LOW, False),
    ErrorType.INVALID_TAILWIND_CLASS: (Severity.LOW, False),
    ErrorType.DEPENDENCY_RESOLUTION_ERROR: (Severity.HIGH, False),
    ErrorType.DEPENDENCY_CONFLICT: (Severity.HIGH, False),
    ErrorType.JSX_SYNTAX_ERROR: (Severity.MEDIUM, True),
}

REACT_HOOKS: Tuple[str, ...] = (
    "useState", "useEffect", "useContext", "useReducer",
    "useMemo", "useCallback", "useRef", "useLayoutEffect",
)


@dataclass(frozen=True)
class BuildError:
    """A classified, located build error"""
    type: ErrorType
    file: Optional[str]
    line: Optional[int]
    column: Optional[int]
    message: str
    severity: Severity
    auto_fixable: bool
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> Tuple[ErrorType, Optional[str], Optional[int], Optional[int]]:
        return (self.type, self.file, self.line, self.column)

    @property
    def location(self) -> str:
        if not self.file:
            return "-"
        if self.line:
            return f"{self.file}:{self.line}:{self.column or 1}"
        return self.file

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "message": self.message,
            "severity": self.severity.value,
            "auto_fixable": self.auto_fixable,
            "context": dict(self.context),
        }


LogChunk = Union[str, Mapping[str, Any]]


class BuildErrorDetector:
    """
    Ordered, data-driven log classifier.

    Each log line is tried against LOCATED_PATTERNS, then UNLOCATED_PATTERNS;
    the first pattern that yields a classified error wins for that line.
    """

    # Errors that carry file:line:column. Messages are classified by MESSAGE_RULES.
    LOCATED_PATTERNS: List[Tuple[str, str]] = [
        # ##[error]src/pages/App.tsx(12,5): error TS1005: ';' expected.
        ("tsc", r"(?:##\[error\])?(?P<file>[^\s(]+)\((?P<line>\d+),(?P<col>\d+)\): error TS(?P<code>\d+): (?P<message>.+)"),
        # src/pages/App.tsx:12:5 - error TS1005: ';' expected.
        ("tsc_pretty", r"(?P<file>[^\s:]+):(?P<line>\d+):(?P<col>\d+) - error TS(?P<code>\d+): (?P<message>.+)"),
        # /tmp/build/src/App.tsx:12:4: ERROR: Unexpected "}"
        ("esbuild", r"(?P<file>[^\s:]+):(?P<line>\d+):(?P<col>\d+): ERROR: (?P<message>.+)"),
        # Error: src/App.tsx:12:5: Unexpected token
        ("legacy", r"Error: (?P<file>[^\s:]+):(?P<line>\d+):(?P<col>\d+): (?P<message>.+)"),
    ]

    # Errors without a line/column, each with a fixed type
    UNLOCATED_PATTERNS: List[Tuple[str, ErrorType]] = [
        (r"Cannot resolve module '(?P<module_name>[^']+)' from '(?P<file>[^']+)'",
         ErrorType.MODULE_NOT_FOUND),
        (r"[Ff]ailed to resolve import \"(?P<module_name>[^\"]+)\" from \"(?P<file>[^\"]+)\"",
         ErrorType.MODULE_NOT_FOUND),
        (r"Error: (?P<file>[^\s:]+): Cannot find module '(?P<module_name>[^']+)'",
         ErrorType.MISSING_IMPORT),
        (r"Could not resolve \"(?P<module_name>\.[^\"]+)\" from \"(?P<file>[^\"]+)\"",
         ErrorType.MISSING_IMPORT),
        (r"The utility `(?P<class_name>[^`]+)` is not available",
         ErrorType.INVALID_TAILWIND_CLASS),
        (r"The `(?P<class_name>[^`]+)` class does not exist",
         ErrorType.INVALID_TAILWIND_CLASS),
    ]

    # npm lines: conflict markers are checked before generic resolution failures
    DEPENDENCY_PATTERNS: List[Tuple[str, ErrorType]] = [
        (r"ERESOLVE|[Cc]onflicting peer dependency", ErrorType.DEPENDENCY_CONFLICT),
        (r"[Cc]annot resolve dependency|[Cc]ould not resolve dependency|"
         r"No matching version found|code ETARGET|404 Not Found",
         ErrorType.DEPENDENCY_RESOLUTION_ERROR),
    ]

    # Message -> type. Group names become context fields.
    MESSAGE_RULES: List[Tuple[str, ErrorType]] = [
        (r"JSX element '(?P<tag_name>[^']+)' has no corresponding closing tag",
         ErrorType.JSX_UNCLOSED_TAG),
        (r"closing ['\"](?P<closing_tag>[^'\"]+)['\"] tag does not match opening ['\"](?P<opening_tag>[^'\"]+)['\"] tag",
         ErrorType.JSX_TAG_MISMATCH),
        (r"Expected corresponding JSX closing tag for ['\"<]?(?P<tag_name>[\w.:-]+)",
         ErrorType.JSX_UNCLOSED_TAG),
        (r"JSX expression expected|JSX attributes must only be assigned a non-empty expression",
         ErrorType.JSX_EXPRESSION_ERROR),
        (r"[Ii]nvalid DOM property `class`|Did you mean `className`",
         ErrorType.JSX_SYNTAX_ERROR),
        (r"Unterminated string (?:literal|constant)|Unterminated template",
         ErrorType.UNTERMINATED_STRING),
        (r"['\"]\)['\"] expected|Expected ['\"]\)['\"]",
         ErrorType.MISSING_PARENTHESIS),
        (r"['\"];['\"] expected|Expected ['\"];['\"]",
         ErrorType.MISSING_SEMICOLON),
        (r"Unexpected token|Unexpected ['\"][{}]['\"]|['\"]\}['\"] expected|Declaration or statement expected",
         ErrorType.UNEXPECTED_TOKEN),
        (r"Property '(?P<property_name>[^']+)' does not exist on type",
         ErrorType.PROPERTY_NOT_FOUND),
        (r"Cannot find name '(?P<variable_name>[^']+)'",
         ErrorType.UNDEFINED_VARIABLE),
        (r"Type '(?P<source_type>.+?)' is not assignable to type '(?P<target_type>.+?)'",
         ErrorType.TYPE_MISMATCH),
        (r"Cannot find module '(?P<module_name>[^']+)'",
         ErrorType.MISSING_IMPORT),
    ]

    # TypeScript codes classified when the message itself is not recognized
    TS_CODE_FALLBACKS: Dict[str, ErrorType] = {
        "1002": ErrorType.UNTERMINATED_STRING,
        "1003": ErrorType.JSX_EXPRESSION_ERROR,
        "1109": ErrorType.UNEXPECTED_TOKEN,
        "1128": ErrorType.UNEXPECTED_TOKEN,
        "1381": ErrorType.UNEXPECTED_TOKEN,
        "1382": ErrorType.UNEXPECTED_TOKEN,
        "2304": ErrorType.UNDEFINED_VARIABLE,
        "2307": ErrorType.MISSING_IMPORT,
        "2315": ErrorType.JSX_UNCLOSED_TAG,
        "2322": ErrorType.TYPE_MISMATCH,
        "2339": ErrorType.PROPERTY_NOT_FOUND,
        "17002": ErrorType.JSX_TAG_MISMATCH,
        "17008": ErrorType.JSX_TAG_MISMATCH,
    }

    STYLE_EXTENSIONS = (".css", ".scss", ".sass", ".less", ".pcss")
    COMMON_SOURCE_DIRS = ("src", "components", "pages", "lib", "utils", "app", "public")
    RUNNER_ROOT = re.compile(r"^/home/runner/work/[^/]+/[^/]+/")
    ESBUILD_LOCATION_LOOKAHEAD = 3

    def __init__(self, workspace_roots: Optional[Sequence[str]] = None):
        roots = settings.workspace_roots if workspace_roots is None else list(workspace_roots)
        self.workspace_roots = [self._as_root(r) for r in roots if r]

        self._located = [(name, re.compile(p)) for name, p in self.LOCATED_PATTERNS]
        self._unlocated = [(re.compile(p), t) for p, t in self.UNLOCATED_PATTERNS]
        self._dependency = [(re.compile(p), t) for p, t in self.DEPENDENCY_PATTERNS]
        self._messages = [(re.compile(p), t) for p, t in self.MESSAGE_RULES]
        self._npm_line = re.compile(r"npm (?:ERR!|error) (?P<message>.+)")
        self._esbuild_header = re.compile(r"^(?:✘\s*)?\[ERROR\]\s+(?P<message>.+)$")
        self._esbuild_location = re.compile(r"^(?P<file>[^\s:]+):(?P<line>\d+):(?P<col>\d+):$")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze(self, log_chunks: Iterable[LogChunk],
                extra_roots: Optional[Sequence[str]] = None) -> List[BuildError]:
        """
        Classify every recognizable error in the given log chunks.

        Args:
            log_chunks: sequence of {"logs": text} mappings (plain strings are accepted)
            extra_roots: additional absolute prefixes to strip from file paths,
                e.g. the temporary build directory

        Returns:
            Errors in log order, deduplicated on (type, file, line, column)
        """
        roots = self.workspace_roots + [self._as_root(r) for r in (extra_roots or []) if r]
        detected: List[BuildError] = []
        seen = set()
        chunk_count = 0

        for chunk in log_chunks:
            chunk_count += 1
            text = chunk if isinstance(chunk, str) else (chunk.get("logs") or "")
            # esbuild prints "✘ [ERROR] message" with the location a few lines below
            pending: Optional[str] = None
            lookahead = 0
            for raw_line in text.splitlines():
                line = raw_line.strip()
                if not line:
                    continue
                header = self._esbuild_header.match(line)
                if header:
                    pending, lookahead = header.group("message").strip(), self.ESBUILD_LOCATION_LOOKAHEAD
                    continue

                location = self._esbuild_location.match(line) if pending else None
                if location:
                    error = self._located_error("esbuild", location.group("file"), int(location.group("line")),
                                                int(location.group("col")), pending, None, roots)
                    pending = None
                else:
                    lookahead -= 1
                    if lookahead <= 0:
                        pending = None
                    error = self._classify_line(line, roots)
                if error is None or error.key in seen:
                    continue
                seen.add(error.key)
                detected.append(error)

        if detected:
            logger.info(
                f"[BuildErrorDetector] Detected {len(detected)} classified errors "
                f"in {chunk_count} log chunk(s)"
            )
        else:
            logger.debug(f"[BuildErrorDetector] No classified errors in {chunk_count} log chunk(s)")
        return detected

    def analyze_text(self, text: str, extra_roots: Optional[Sequence[str]] = None) -> List[BuildError]:
        return self.analyze([{"logs": text}], extra_roots=extra_roots)

    def classify_message(self, message: str, code: Optional[str] = None
                         ) -> Optional[Tuple[ErrorType, Dict[str, Any]]]:
        """Map a compiler message (and optional TS code) onto the taxonomy"""
        for pattern, error_type in self._messages:
            match = pattern.search(message)
            if match:
                context = {k: v for k, v in match.groupdict().items() if v is not None}
                if error_type == ErrorType.JSX_TAG_MISMATCH:
                    context["tag_name"] = context.get("opening_tag")
                return error_type, context

        if code and code in self.TS_CODE_FALLBACKS:
            return self.TS_CODE_FALLBACKS[code], {}
        return None

    def normalize_path(self, raw_path: str, roots: Optional[Sequence[str]] = None) -> str:
        """
        Convert a log path into a path relative to the source root.

        /github/workspace/src/components/Calculator.tsx -> src/components/Calculator.tsx
        """
        path = raw_path.strip().strip("'\"").replace("\\", "/")
        for root in (self.workspace_roots if roots is None else roots):
            if path.startswith(root):
                return path[len(root):]

        runner = self.RUNNER_ROOT.match(path)
        if runner:
            return path[runner.end():]

        parts = path.split("/")
        if "workspace" in parts:
            return "/".join(parts[parts.index("workspace") + 1:])

        if path.startswith("/"):
            for directory in self.COMMON_SOURCE_DIRS:
                if directory in parts:
                    return "/".join(parts[parts.index(directory):])
            return posixpath.basename(path)

        while path.startswith("./"):
            path = path[2:]
        return path

    # ------------------------------------------------------------------
    # Line classification
    # ------------------------------------------------------------------

    def _classify_line(self, line: str, roots: Sequence[str]) -> Optional[BuildError]:
        for name, pattern in self._located:
            match = pattern.search(line)
            if match:
                # A located line that is not classified is dropped, not retried
                return self._from_located(name, match, roots)

        for pattern, error_type in self._unlocated:
            match = pattern.search(line)
            if match:
                groups = {k: v for k, v in match.groupdict().items() if v is not None}
                file_path = groups.pop("file", None)
                return self._build(
                    error_type,
                    self.normalize_path(file_path, roots) if file_path else None,
                    None, None,
                    match.group(0),
                    groups,
                )

        npm = self._npm_line.search(line)
        if npm:
            message = npm.group("message").strip()
            for pattern, error_type in self._dependency:
                if pattern.search(message):
                    return self._build(error_type, None, None, None, message, {})
        return None

    def _from_located(self, name: str, match: "re.Match", roots: Sequence[str]) -> Optional[BuildError]:
        return self._located_error(name, match.group("file"), int(match.group("line")), int(match.group("col")),
                                   match.group("message").strip(), match.groupdict().get("code"), roots)

    def _located_error(self, name: str, raw_path: str, line_no: int, column: int, message: str,
                       code: Optional[str], roots: Sequence[str]) -> Optional[BuildError]:
        file_path = self.normalize_path(raw_path, roots)

        if file_path.lower().endswith(self.STYLE_EXTENSIONS):
            return self._build(ErrorType.CSS_SYNTAX_ERROR, file_path, line_no, column, message, {})

        classified = self.classify_message(message, code)
        if classified is None and name == "legacy" and "JSX" in message:
            classified = (ErrorType.JSX_SYNTAX_ERROR, {})
        if classified is None:
            logger.debug(f"[BuildErrorDetector] Dropping unclassified error at {file_path}:{line_no}: {message}")
            return None

        error_type, context = classified
        if code:
            context["ts_code"] = f"TS{code}"
        return self._build(error_type, file_path, line_no, column, message, context)

    def _build(self, error_type: ErrorType, file_path: Optional[str], line_no: Optional[int],
               column: Optional[int], message: str, context: Dict[str, Any]) -> BuildError:
        severity, _ = ERROR_TAXONOMY[error_type]
        return BuildError(
            type=error_type,
            file=file_path or None,
            line=line_no,
            column=column,
            message=message,
            severity=severity,
            auto_fixable=self._is_auto_fixable(error_type, context),
            context=context,
        )

    @staticmethod
    def _is_auto_fixable(error_type: ErrorType, context: Dict[str, Any]) -> bool:
        if error_type == ErrorType.UNDEFINED_VARIABLE:
            return context.get("variable_name") in REACT_HOOKS
        return ERROR_TAXONOMY[error_type][1]

    @staticmethod
    def _as_root(root: str) -> str:
        root = root.replace("\\", "/")
        return root if root.endswith("/") else root + "/"


# Singleton instance
build_error_detector = BuildErrorDetector()
