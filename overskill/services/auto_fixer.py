"""
Auto Fix Engine - Deterministic source repairs for classified build errors

NO AI. Each error type maps to one text-level rule that works on the full file
content, line-indexed by the error's 1-based line. Rules never parse the code,
so they keep working on files that do not compile.

Every rule checks a precondition before it edits (brace balance, tag counts,
quote parity ...). Applying the same fix twice therefore either changes
nothing and reports NOT_APPLICABLE, or fails cleanly. It never corrupts the file.
"""

import re
import posixpath
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field

from overskill.core.config import settings
from overskill.core.logging_config import logger
from overskill.services.build_error_detector import BuildError, ErrorType, REACT_HOOKS
from overskill.services.source_file_set import SourceFile, SourceFileSet


class FixFailureReason(Enum):
    FILE_NOT_FOUND = "file_not_found"
    LINE_OUT_OF_RANGE = "line_out_of_range"
    NO_FIX_RULE = "no_fix_rule"
    NOT_APPLICABLE = "not_applicable"
    EXCEPTION = "exception"


@dataclass
class FixResult:
    """Result of a single fix attempt"""
    success: bool
    error_type: ErrorType
    file_path: Optional[str]
    files: Optional[SourceFileSet] = None   # Only set on success
    description: str = ""
    changes: List[Dict[str, Any]] = field(default_factory=list)
    failure: Optional[FixFailureReason] = None
    error: Optional[str] = None


@dataclass
class FixBatchResult:
    """Result of applying fixes for several errors in sequence"""
    files: SourceFileSet
    results: List[FixResult] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> List[FixResult]:
        return [r for r in self.results if not r.success]


class _NotApplicable(Exception):
    """Raised by a rule when its precondition does not hold"""


_RuleOutput = Tuple[str, str, List[Dict[str, Any]]]

SCRIPT_EXTENSIONS = (".tsx", ".ts", ".jsx", ".js")

_STRING_LITERAL = re.compile(r'"(?:\\.|[^"\\\n])*"|\'(?:\\.|[^\'\\\n])*\'|`(?:\\.|[^`\\])*`')
_LINE_TERMINATOR = re.compile(r"(\s*[;{]\s*)$")
_ESCAPED_ATTRIBUTE = re.compile(r'\b(className|style)=\\?"((?:[^"\\]|\\(?!"))*)\\"')
_HTML_CLASS_ATTRIBUTE = re.compile(r'(?<=\s)class=(?=["\'{])')
_REACT_NAMED_IMPORT = re.compile(r"import\s+(React\s*,\s*)?\{([^}]*)\}\s*from\s*(['\"])react\3")
_REACT_DEFAULT_IMPORT = re.compile(r"import\s+React\s+from\s*(['\"])react\1")
_REACT_NAMESPACE_IMPORT = re.compile(r"import\s+\*\s+as\s+React\s+from\s*(['\"])react\1;?")


def _strip_strings(text: str) -> str:
    return _STRING_LITERAL.sub("", text)


def _indent_of(line: str) -> str:
    return line[:len(line) - len(line.lstrip())]


def _find_tag_end(lines: List[str], row: int, col: int) -> Optional[Tuple[int, bool]]:
    """Locate the '>' that ends an opening tag, skipping {expressions} and strings"""
    depth = 0
    quote = None
    while row < len(lines):
        line = lines[row]
        while col < len(line):
            ch = line[col]
            if quote:
                if ch == quote:
                    quote = None
            elif ch in "\"'`":
                quote = ch
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
            elif ch == ">" and depth == 0:
                return row, col > 0 and line[col - 1] == "/"
            col += 1
        row += 1
        col = 0
    return None


def _count_open_tags(content: str, tag: str) -> int:
    """Opening tags that still need a closing tag; an unfinished tag counts as open"""
    lines = content.split("\n")
    opener = re.compile(rf"<{re.escape(tag)}(?=[\s>/]|$)")
    count = 0
    for row, line in enumerate(lines):
        for match in opener.finditer(line):
            tag_end = _find_tag_end(lines, row, match.end())
            if tag_end is None or not tag_end[1]:
                count += 1
    return count


def _count_close_tags(content: str, tag: str) -> int:
    return len(re.findall(rf"</{re.escape(tag)}\s*>", content))


def _unclosed_quote(line: str) -> Optional[Tuple[int, str]]:
    """Position and kind of the quote left open at the end of the line, if any"""
    quote = None
    start = 0
    col = 0
    while col < len(line):
        ch = line[col]
        if quote:
            if ch == "\\":
                col += 1
            elif ch == quote:
                quote = None
        elif ch in "\"'`":
            quote, start = ch, col
        col += 1
    return (start, quote) if quote else None


class AutoFixEngine:
    """
    Applies one deterministic rule per error type.

    apply_fix() never raises: precondition failures and unexpected exceptions
    are returned as typed FixResult failures.
    """

    # Lines searched around the reported line when locating a tag
    SEARCH_WINDOW = 3

    def __init__(self):
        self._rules: Dict[ErrorType, Callable[[BuildError, SourceFile, SourceFileSet], _RuleOutput]] = {
            ErrorType.JSX_TAG_MISMATCH: self._fix_jsx_tag_mismatch,
            ErrorType.JSX_UNCLOSED_TAG: self._fix_jsx_unclosed_tag,
            ErrorType.JSX_EXPRESSION_ERROR: self._fix_jsx_expression_error,
            ErrorType.UNTERMINATED_STRING: self._fix_unterminated_string,
            ErrorType.UNEXPECTED_TOKEN: self._fix_unexpected_token,
            ErrorType.MISSING_SEMICOLON: self._fix_missing_semicolon,
            ErrorType.MISSING_PARENTHESIS: self._fix_missing_parenthesis,
            ErrorType.MISSING_IMPORT: self._fix_missing_import,
            ErrorType.UNDEFINED_VARIABLE: self._fix_undefined_variable,
            ErrorType.JSX_SYNTAX_ERROR: self._fix_jsx_syntax_error,
        }
        # Rules that edit the reported line and cannot run without one
        self._line_rules = {
            ErrorType.JSX_TAG_MISMATCH,
            ErrorType.JSX_UNCLOSED_TAG,
            ErrorType.UNTERMINATED_STRING,
            ErrorType.UNEXPECTED_TOKEN,
            ErrorType.MISSING_SEMICOLON,
            ErrorType.MISSING_PARENTHESIS,
        }

    def supports(self, error_type: ErrorType) -> bool:
        return error_type in self._rules

    def apply_fix(self, error: BuildError, files: SourceFileSet) -> FixResult:
        """
        Apply the rule registered for error.type.

        Returns a FixResult whose `files` is a new SourceFileSet in which only
        the target file differs from `files`. The input set is not modified.
        """
        rule = self._rules.get(error.type)
        if rule is None:
            return self._failure(error, FixFailureReason.NO_FIX_RULE,
                                 f"No fix available for error type: {error.type.value}")

        source_file = self.find_file(files, error.file)
        if source_file is None:
            return self._failure(error, FixFailureReason.FILE_NOT_FOUND,
                                 f"File not found: {error.file}")

        line_count = len(source_file.lines)
        if error.line is not None and (error.line < 1 or error.line > line_count):
            return self._failure(error, FixFailureReason.LINE_OUT_OF_RANGE,
                                 f"Line {error.line} out of range (file has {line_count} lines)",
                                 file_path=source_file.path)
        if error.line is None and error.type in self._line_rules:
            return self._failure(error, FixFailureReason.LINE_OUT_OF_RANGE,
                                 "Error has no line number", file_path=source_file.path)

        try:
            new_content, description, changes = rule(error, source_file, files)
        except _NotApplicable as e:
            logger.log_fix_event(error.type.value, source_file.path, False, str(e))
            return self._failure(error, FixFailureReason.NOT_APPLICABLE, str(e),
                                 file_path=source_file.path)
        except Exception as e:
            logger.error(f"[AutoFixEngine] Error applying {error.type.value} fix to "
                         f"{source_file.path}: {e}", exc_info=True)
            return self._failure(error, FixFailureReason.EXCEPTION,
                                 f"Exception while applying fix: {e}",
                                 file_path=source_file.path)

        if new_content == source_file.content:
            return self._failure(error, FixFailureReason.NOT_APPLICABLE,
                                 "Fix produced no change", file_path=source_file.path)

        patched = files.copy()
        patched.replace(source_file.path, new_content)
        logger.log_fix_event(error.type.value, source_file.path, True, description)
        return FixResult(
            success=True,
            error_type=error.type,
            file_path=source_file.path,
            files=patched,
            description=description,
            changes=changes,
        )

    def apply_fixes(self, errors: Sequence[BuildError], files: SourceFileSet,
                    limit: Optional[int] = None) -> FixBatchResult:
        """
        Apply fixes for auto-fixable errors one after another.

        Each fix sees the output of the previous one. At most `limit` errors
        are attempted (settings.MAX_FIXES_PER_ATTEMPT by default).
        """
        limit = settings.MAX_FIXES_PER_ATTEMPT if limit is None else limit
        batch = FixBatchResult(files=files)
        for error in [e for e in errors if e.auto_fixable][:limit]:
            result = self.apply_fix(error, batch.files)
            if result.success:
                batch.files = result.files
            batch.results.append(result)
        logger.info(f"[AutoFixEngine] Applied {batch.applied}/{len(batch.results)} fixes")
        return batch

    @staticmethod
    def find_file(files: SourceFileSet, path: Optional[str]) -> Optional[SourceFile]:
        """Exact path, then src/-prefixed path, then a unique basename match"""
        if not path:
            return None
        found = files.get(path) or files.get(f"src/{path}")
        if found:
            return found
        basename = posixpath.basename(path)
        matches = [f for f in files if posixpath.basename(f.path) == basename]
        return matches[0] if len(matches) == 1 else None

    # ------------------------------------------------------------------
    # JSX structure
    # ------------------------------------------------------------------

    def _fix_jsx_tag_mismatch(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        opening = error.context.get("opening_tag")
        closing = error.context.get("closing_tag")
        if not opening or not closing:
            raise _NotApplicable("Tag names missing from error context")

        content = source.content
        surplus = _count_close_tags(content, closing) - _count_open_tags(content, closing)
        if surplus <= 0:
            raise _NotApplicable(f"No unmatched </{closing}> in file")

        lines = content.split("\n")
        close_re = re.compile(rf"</{re.escape(closing)}\s*>")
        target = self._nearest_line(lines, error.line - 1, lambda l: close_re.search(l) is not None)
        if target is None:
            raise _NotApplicable(f"No </{closing}> near line {error.line}")

        old_line = lines[target]
        if opening == closing:
            new_line = close_re.sub("", old_line, count=1)
            description = f"Removed duplicate closing tag </{closing}>"
            if new_line.strip():
                lines[target] = new_line
            else:
                del lines[target]
                new_line = ""
        else:
            new_line = close_re.sub(f"</{opening}>", old_line, count=1)
            lines[target] = new_line
            description = f"Fixed JSX tag mismatch: changed </{closing}> to </{opening}>"

        changes = [{"file": source.path, "line": target + 1, "old": old_line.strip(), "new": new_line.strip()}]
        return "\n".join(lines), description, changes

    def _fix_jsx_unclosed_tag(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        tag = error.context.get("tag_name")
        if not tag:
            raise _NotApplicable("Tag name missing from error context")

        content = source.content
        if _count_open_tags(content, tag) <= _count_close_tags(content, tag):
            raise _NotApplicable(f"<{tag}> is already closed")

        lines = content.split("\n")
        open_re = re.compile(rf"<{re.escape(tag)}(?=[\s>/]|$)")
        start = self._nearest_line(lines, error.line - 1, lambda l: open_re.search(l) is not None)
        if start is None:
            raise _NotApplicable(f"No <{tag}> near line {error.line}")

        tag_end = _find_tag_end(lines, start, open_re.search(lines[start]).end())
        if tag_end is None:
            raise _NotApplicable(f"Opening tag <{tag}> never ends")
        end_row, self_closing = tag_end
        if self_closing:
            raise _NotApplicable(f"<{tag}> is self-closing")

        indent = _indent_of(lines[start])
        insert_at = self._block_end(lines, end_row + 1, len(indent))
        closing_line = f"{indent}</{tag}>"
        lines.insert(insert_at, closing_line)

        changes = [{"file": source.path, "line": insert_at + 1, "added": closing_line}]
        return "\n".join(lines), f"Added missing closing tag </{tag}>", changes

    def _fix_jsx_expression_error(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        lines = source.content.split("\n")
        rows = [error.line - 1] if error.line else []
        rows += [i for i in range(len(lines)) if i not in rows]

        for row in rows:
            fixed = _ESCAPED_ATTRIBUTE.sub(r'\1="\2"', lines[row])
            if fixed != lines[row]:
                changes = [{"file": source.path, "line": row + 1, "old": lines[row].strip(), "new": fixed.strip()}]
                lines[row] = fixed
                return "\n".join(lines), "Fixed JSX expression error in className/style attribute", changes

        raise _NotApplicable("No malformed className/style attribute found")

    def _fix_jsx_syntax_error(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        fixed, count = _HTML_CLASS_ATTRIBUTE.subn("className=", source.content)
        if not count:
            raise _NotApplicable("No class= attributes to convert")
        changes = [{"file": source.path, "description": f"Converted {count} class attribute(s) to className"}]
        return fixed, "Changed 'class' attributes to 'className'", changes

    # ------------------------------------------------------------------
    # Syntax
    # ------------------------------------------------------------------

    def _fix_unterminated_string(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        lines = source.content.split("\n")
        row = error.line - 1
        line = lines[row]

        unclosed = _unclosed_quote(line)
        if unclosed is None:
            raise _NotApplicable("All string literals on the line are terminated")
        open_pos, quote = unclosed
        if quote == "`":
            raise _NotApplicable("Template literals may span lines")

        before = line[:open_pos].rstrip()
        rest = line[open_pos + 1:]
        boundary = re.search(r"\s*/?>", rest)

        if before.endswith("=") and "<" in before and boundary:
            # JSX attribute: close before the end of the tag
            cut = open_pos + 1 + boundary.start()
            fixed = line[:cut] + quote + line[cut:]
        else:
            fixed = line.rstrip() + quote

        lines[row] = fixed
        changes = [{"file": source.path, "line": error.line, "old": line.strip(), "new": fixed.strip()}]
        return "\n".join(lines), "Added missing closing quote to unterminated string", changes

    def _fix_unexpected_token(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        content = source.content
        stripped = _strip_strings(content)
        file_delta = stripped.count("{") - stripped.count("}")
        if file_delta == 0:
            raise _NotApplicable("Braces are already balanced")

        lines = content.split("\n")
        row = error.line - 1
        line = lines[row]
        code = _strip_strings(line)
        line_delta = code.count("{") - code.count("}")

        if file_delta > 0:
            if line_delta > 0:
                fixed = line.rstrip() + "}"
                lines[row] = fixed
                changes = [{"file": source.path, "line": error.line, "old": line.strip(), "new": fixed.strip()}]
            else:
                insert_at = row + 1
                if insert_at == len(lines) and lines[-1] == "":
                    insert_at -= 1
                lines.insert(insert_at, f"{_indent_of(line)}}}")
                changes = [{"file": source.path, "line": insert_at + 1, "added": "}"}]
            return "\n".join(lines), "Added missing closing brace", changes

        if "}" not in code:
            raise _NotApplicable(f"No closing brace on line {error.line} to remove")
        cut = line.rfind("}")
        fixed = line[:cut] + line[cut + 1:]
        if fixed.strip():
            lines[row] = fixed.rstrip()
        else:
            del lines[row]
        changes = [{"file": source.path, "line": error.line, "old": line.strip(), "new": fixed.strip()}]
        return "\n".join(lines), "Removed extra closing brace", changes

    def _fix_missing_semicolon(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        lines = source.content.split("\n")
        row = error.line - 1
        line = lines[row]
        trimmed = line.rstrip()
        if not trimmed:
            raise _NotApplicable("Line is empty")
        if trimmed.endswith((";", "{", "}")):
            raise _NotApplicable(f"Line already ends with '{trimmed[-1]}'")
        if trimmed.endswith((",", "(", "[")):
            raise _NotApplicable(f"Line continues past '{trimmed[-1]}'")

        fixed = trimmed + ";"
        lines[row] = fixed
        changes = [{"file": source.path, "line": error.line, "old": line.strip(), "new": fixed.strip()}]
        return "\n".join(lines), "Added missing semicolon", changes

    def _fix_missing_parenthesis(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        lines = source.content.split("\n")
        row = error.line - 1
        line = lines[row]
        code = _strip_strings(line)
        missing = code.count("(") - code.count(")")
        if missing <= 0:
            raise _NotApplicable("Parentheses on the line are balanced")

        trimmed = line.rstrip()
        terminator = _LINE_TERMINATOR.search(trimmed)
        if terminator:
            fixed = trimmed[:terminator.start()] + ")" * missing + trimmed[terminator.start():]
        else:
            fixed = trimmed + ")" * missing
        lines[row] = fixed
        changes = [{"file": source.path, "line": error.line, "old": line.strip(), "new": fixed.strip()}]
        return "\n".join(lines), "Added missing closing parenthesis", changes

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def _fix_missing_import(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        specifier = error.context.get("module_name")
        if not specifier:
            match = re.search(r"module '([^']+)'", error.message)
            specifier = match.group(1) if match else None
        if not specifier or not specifier.startswith((".", "@/")):
            raise _NotApplicable("Only relative imports can be corrected")

        corrected = self._resolve_specifier(source.path, specifier, files)
        if corrected is None or corrected == specifier:
            raise _NotApplicable(f"No file matches import '{specifier}'")

        content = source.content
        fixed = content.replace(f"'{specifier}'", f"'{corrected}'").replace(f'"{specifier}"', f'"{corrected}"')
        if fixed == content:
            raise _NotApplicable(f"Import '{specifier}' not found in {source.path}")

        changes = [{"file": source.path, "old": specifier, "new": corrected}]
        return fixed, f"Fixed import path from '{specifier}' to '{corrected}'", changes

    def _fix_undefined_variable(self, error: BuildError, source: SourceFile, files: SourceFileSet) -> _RuleOutput:
        name = error.context.get("variable_name")
        if not name:
            match = re.search(r"Cannot find name '([^']+)'", error.message)
            name = match.group(1) if match else None
        if name not in REACT_HOOKS:
            raise _NotApplicable(f"'{name}' is not a React hook")

        content = source.content
        named = _REACT_NAMED_IMPORT.search(content)
        if named:
            imported = [n.strip() for n in named.group(2).split(",") if n.strip()]
            if name in imported:
                raise _NotApplicable(f"{name} is already imported")
            default = "React, " if named.group(1) else ""
            quote = named.group(3)
            statement = f"import {default}{{ {', '.join(imported + [name])} }} from {quote}react{quote}"
            fixed = content[:named.start()] + statement + content[named.end():]
        elif _REACT_DEFAULT_IMPORT.search(content):
            default = _REACT_DEFAULT_IMPORT.search(content)
            quote = default.group(1)
            statement = f"import React, {{ {name} }} from {quote}react{quote}"
            fixed = content[:default.start()] + statement + content[default.end():]
        elif _REACT_NAMESPACE_IMPORT.search(content):
            namespace = _REACT_NAMESPACE_IMPORT.search(content)
            statement = f"import {{ {name} }} from 'react';"
            fixed = content[:namespace.end()] + "\n" + statement + content[namespace.end():]
        else:
            statement = f"import {{ {name} }} from 'react';"
            fixed = statement + "\n" + content

        changes = [{"file": source.path, "line": 1, "description": f"Added {name} to React imports"}]
        return fixed, f"Added missing React hook import: {name}", changes

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _nearest_line(self, lines: List[str], row: int, predicate: Callable[[str], bool]) -> Optional[int]:
        """Reported row first, then alternately below and above it"""
        candidates = [row]
        for offset in range(1, self.SEARCH_WINDOW + 1):
            candidates += [row + offset, row - offset]
        for candidate in candidates:
            if 0 <= candidate < len(lines) and predicate(lines[candidate]):
                return candidate
        return None

    @staticmethod
    def _block_end(lines: List[str], start: int, indent: int) -> int:
        """First closing line at or left of `indent`, or any line left of it"""
        for i in range(start, len(lines)):
            text = lines[i].strip()
            if not text:
                continue
            current = len(lines[i]) - len(lines[i].lstrip())
            if (text.startswith("</") and current <= indent) or current < indent:
                return i
        if lines and lines[-1] == "":
            return len(lines) - 1
        return len(lines)

    @staticmethod
    def _resolve_specifier(importer: str, specifier: str, files: SourceFileSet) -> Optional[str]:
        """Find the file an import points at and return the specifier with its real extension"""
        if specifier.startswith("@/"):
            base = posixpath.normpath(posixpath.join("src", specifier[2:]))
        else:
            base = posixpath.normpath(posixpath.join(posixpath.dirname(importer), specifier))

        spec_stem = specifier
        for ext in SCRIPT_EXTENSIONS:
            if base.endswith(ext):
                base = base[:-len(ext)]
                spec_stem = specifier[:-len(ext)]
                break

        by_lower = {f.path.lower(): f.path for f in files}
        for ext in SCRIPT_EXTENSIONS:
            actual = by_lower.get((base + ext).lower())
            if actual:
                # Keep the importer's relative prefix, take the real name and extension
                real_name = posixpath.basename(actual)
                prefix = spec_stem[:len(spec_stem) - len(posixpath.basename(spec_stem))]
                return prefix + real_name
        return None

    @staticmethod
    def _failure(error: BuildError, reason: FixFailureReason, message: str,
                 file_path: Optional[str] = None) -> FixResult:
        return FixResult(
            success=False,
            error_type=error.type,
            file_path=file_path or error.file,
            failure=reason,
            error=message,
        )


# Singleton instance
auto_fix_engine = AutoFixEngine()
