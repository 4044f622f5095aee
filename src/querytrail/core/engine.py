"""
querytrail Core Engine

Source analysis and the sidecar reference index.

- :class:`CodeAnalyzer` extracts functions, anonymous scopes, and their
  call sites from Python (``ast``) and Kotlin (tree-sitter) sources.
- :class:`ReferenceIndex` stores functions and call edges in SQLite and
  answers "who calls this symbol", returning caller elements for the
  graph builder.
- :func:`scan_directory` finds source and mapper files.
"""

import ast
import hashlib
import logging
import sqlite3
import threading
from dataclasses import dataclass, asdict, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, List, Optional, Dict

from querytrail.core.config import QuerytrailConfig
from querytrail.core.graph import (
    AnonymousScopeElement, CallerElement, FunctionElement, UnresolvedElement,
)
from querytrail.core.labels import Reference, normalize_path

# Application code (CLI, MCP server) is responsible for configuring logging.
logger = logging.getLogger(__name__)

MODULE_SCOPE = "<module>"
INIT_SCOPE = "<init>"
CONSTRUCTOR_SCOPE = "<constructor>"
PROPERTY_SCOPE = "<property>"
CLASS_SCOPE = "<class>"


def is_anonymous_scope(caller_name: str) -> bool:
    """Anonymous callers are stored under a ``<...>`` placeholder name."""
    return caller_name.startswith("<") and caller_name.endswith(">")


# =============================================================================
# Data Models
# =============================================================================

@dataclass
class CallSite:
    """A call expression found inside a function body or an anonymous scope."""
    callee_name: str
    """Name of the called function (simple name or attribute name)."""
    line: int
    """Source line number where the call occurs."""
    column: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FunctionMetadata:
    """A function extracted from one source file."""
    name: str
    start_line: int
    end_line: int
    language: str = "Python"
    call_sites: List[CallSite] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AnonymousScope:
    """
    Code that calls functions without being a named function itself:
    a top-level statement, an ``init`` block, a property initializer.
    Only scopes that contain at least one call are extracted.
    """
    scope: str
    line: int
    column: int
    call_sites: List[CallSite] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FileAnalysis:
    """Everything extracted from one source file."""
    functions: List[FunctionMetadata] = field(default_factory=list)
    anonymous_scopes: List[AnonymousScope] = field(default_factory=list)


@dataclass(frozen=True)
class FunctionRecord:
    """A function row read back from the index."""
    name: str
    file_path: str
    line_start: int
    line_end: int
    language: str = ""

    def reference(self) -> Reference:
        return Reference(self.name, normalize_path(self.file_path), self.line_start)


@dataclass
class IndexResult:
    """Typed result returned by :meth:`IndexingPipeline.run`."""
    files_scanned: int = 0
    files_processed: int = 0
    files_skipped: int = 0
    files_removed: int = 0
    functions_found: int = 0
    call_sites_found: int = 0
    errors: int = 0
    root_dir: str = ""
    index_dir: str = ""

    def to_dict(self) -> dict:
        """Return a JSON-serializable dict for API/agent pipelines."""
        return asdict(self)


# =============================================================================
# Kotlin grammar
# =============================================================================

_IDENTIFIER_TYPES = ("simple_identifier", "identifier")

# Declarations that own the calls inside them without having a name.
_KOTLIN_SCOPE_TYPES = {
    "anonymous_initializer": INIT_SCOPE,
    "secondary_constructor": CONSTRUCTOR_SCOPE,
    "property_declaration": PROPERTY_SCOPE,
}
_KOTLIN_CLASS_TYPES = frozenset((
    "class_declaration", "object_declaration", "companion_object",
))

_kotlin_language: Any = None
_kotlin_language_lock = threading.Lock()


def _get_kotlin_language() -> Any:
    """Load the tree-sitter Kotlin grammar once per process."""
    global _kotlin_language
    with _kotlin_language_lock:
        if _kotlin_language is None:
            try:
                import tree_sitter
                import tree_sitter_kotlin
            except ImportError as e:
                raise ImportError(
                    "tree-sitter and tree-sitter-kotlin are required for Kotlin sources. "
                    "Install with: pip install tree-sitter tree-sitter-kotlin"
                ) from e
            _kotlin_language = tree_sitter.Language(tree_sitter_kotlin.language())
        return _kotlin_language


def _node_text(node: Any) -> str:
    return node.text.decode("utf-8", errors="replace")


def _kotlin_function_name(node: Any) -> Optional[Any]:
    name = node.child_by_field_name("name")
    if name is not None:
        return name
    for child in node.children:
        if child.type in _IDENTIFIER_TYPES:
            return child
    return None


def _kotlin_callee(call: Any) -> Optional[Any]:
    """The identifier node naming what *call* invokes, or None (e.g. ``(f)()``)."""
    if not call.children:
        return None
    target = call.children[0]
    if target.type in _IDENTIFIER_TYPES:
        return target
    if target.type == "navigation_expression" and target.children:
        last = target.children[-1]
        if last.type in _IDENTIFIER_TYPES:
            return last
        if last.type == "navigation_suffix":
            for child in last.children:
                if child.type in _IDENTIFIER_TYPES:
                    return child
    return None


# =============================================================================
# Code Analysis
# =============================================================================

class CodeAnalyzer:
    """
    Extracts functions, anonymous scopes, and call sites.

    Python goes through the ``ast`` module; Kotlin is parsed with
    tree-sitter.  Call sites are recorded by the bare name of the callee,
    so overloads and same-named methods on different receivers are not
    told apart.
    """

    LANGUAGES = {".py": "Python", ".kt": "Kotlin"}

    # ── Public API ───────────────────────────────────────────────

    @staticmethod
    def language_for(file_path: str) -> Optional[str]:
        return CodeAnalyzer.LANGUAGES.get(Path(file_path).suffix.lower())

    @staticmethod
    def analyze(source_code: str, file_path: str = "<string>") -> FileAnalysis:
        """Functions and anonymous scopes of one file, each with its call sites."""
        if CodeAnalyzer.language_for(file_path) == "Kotlin":
            return CodeAnalyzer._analyze_kotlin(source_code, file_path)
        return CodeAnalyzer._analyze_python(source_code, file_path)

    @staticmethod
    def extract_functions(source_code: str, file_path: str = "<string>") -> List[FunctionMetadata]:
        """Extract all function / method definitions from *source_code*."""
        return CodeAnalyzer.analyze(source_code, file_path).functions

    @staticmethod
    def extract_anonymous_scopes(source_code: str, file_path: str = "<string>") -> List[AnonymousScope]:
        """Calls made outside any function, grouped by the scope that makes them."""
        return CodeAnalyzer.analyze(source_code, file_path).anonymous_scopes

    # ── Python AST extraction ────────────────────────────────────

    @staticmethod
    def _analyze_python(source_code: str, file_path: str) -> FileAnalysis:
        try:
            tree = ast.parse(source_code)
        except SyntaxError as e:
            logger.error(f"Syntax error in {file_path}: {e}")
            return FileAnalysis()

        functions = []
        for node in ast.walk(tree):
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                functions.append(FunctionMetadata(
                    name=node.name,
                    start_line=node.lineno,
                    end_line=node.end_lineno or node.lineno,
                    language="Python",
                    call_sites=CodeAnalyzer._python_call_sites(node),
                ))
        functions.sort(key=lambda f: f.start_line)

        # Each top-level statement outside a def/class is its own anonymous caller.
        scopes = []
        for stmt in tree.body:
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                continue
            sites = CodeAnalyzer._python_call_sites(stmt)
            if sites:
                scopes.append(AnonymousScope(MODULE_SCOPE, stmt.lineno, stmt.col_offset, sites))
        return FileAnalysis(functions=functions, anonymous_scopes=scopes)

    @staticmethod
    def _python_call_sites(node: ast.AST) -> List[CallSite]:
        sites: List[CallSite] = []
        for child in ast.walk(node):
            if not isinstance(child, ast.Call):
                continue
            if isinstance(child.func, ast.Name):
                sites.append(CallSite(child.func.id, child.lineno, child.col_offset))
            elif isinstance(child.func, ast.Attribute):
                sites.append(CallSite(child.func.attr, child.lineno, child.col_offset))
        sites.sort(key=lambda s: (s.line, s.column))
        return sites

    # ── Kotlin tree-sitter extraction ────────────────────────────

    @staticmethod
    def _analyze_kotlin(source_code: str, file_path: str) -> FileAnalysis:
        import tree_sitter

        parser = tree_sitter.Parser()
        parser.language = _get_kotlin_language()
        tree = parser.parse(source_code.encode("utf-8"))
        if tree.root_node.has_error:
            logger.debug(f"Kotlin parse errors in {file_path}; extracting what parsed")

        functions: List[FunctionMetadata] = []
        scopes: List[AnonymousScope] = []

        # (node, owner of the calls below it, inside a class declaration)
        stack: List[tuple] = [(tree.root_node, None, False)]
        while stack:
            node, owner, in_class = stack.pop()
            kind = node.type

            if kind == "function_declaration":
                name = _kotlin_function_name(node)
                if name is not None:
                    owner = FunctionMetadata(
                        name=_node_text(name),
                        start_line=name.start_point[0] + 1,
                        end_line=node.end_point[0] + 1,
                        language="Kotlin",
                    )
                    functions.append(owner)
            elif owner is None and kind in _KOTLIN_SCOPE_TYPES:
                owner = AnonymousScope(_KOTLIN_SCOPE_TYPES[kind],
                                       node.start_point[0] + 1, node.start_point[1])
                scopes.append(owner)
            elif kind in _KOTLIN_CLASS_TYPES:
                in_class = True
            elif kind == "call_expression":
                callee = _kotlin_callee(node)
                if callee is not None:
                    if owner is None:
                        # Superclass arguments, delegation, script statements.
                        owner = AnonymousScope(CLASS_SCOPE if in_class else MODULE_SCOPE,
                                               node.start_point[0] + 1, node.start_point[1])
                        scopes.append(owner)
                    owner.call_sites.append(CallSite(
                        _node_text(callee), callee.start_point[0] + 1, callee.start_point[1],
                    ))

            stack.extend((child, owner, in_class) for child in reversed(node.children))

        for fn in functions:
            fn.call_sites.sort(key=lambda s: (s.line, s.column))
        for scope in scopes:
            scope.call_sites.sort(key=lambda s: (s.line, s.column))
        functions.sort(key=lambda f: f.start_line)
        scopes = [s for s in scopes if s.call_sites]
        scopes.sort(key=lambda s: (s.line, s.column))
        return FileAnalysis(functions=functions, anonymous_scopes=scopes)


# =============================================================================
# Reference Index (SQLite)
# =============================================================================

class ReferenceIndex:
    """SQLite-backed store of functions and call edges.

    Uses thread-local connections so that each thread reuses a single
    connection instead of opening/closing one per method call.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Return a thread-local SQLite connection, creating it on first use."""
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, timeout=30)
        return self._local.conn

    def close(self) -> None:
        """Close the thread-local connection for the current thread. Idempotent."""
        if hasattr(self._local, "conn") and self._local.conn is not None:
            self._local.conn.close()
            self._local.conn = None

    def _init_db(self):
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS indexed_files (
                file_path TEXT PRIMARY KEY,
                file_hash TEXT NOT NULL,
                last_indexed TIMESTAMP NOT NULL,
                function_count INTEGER DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS functions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_path TEXT NOT NULL,
                function_name TEXT NOT NULL,
                line_start INTEGER NOT NULL,
                line_end INTEGER NOT NULL,
                language TEXT,
                relative_path TEXT
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_functions_name ON functions(function_name)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_functions_file ON functions(file_path)")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS call_edges (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                caller_file TEXT NOT NULL,
                caller_name TEXT NOT NULL,
                caller_line INTEGER NOT NULL,
                caller_column INTEGER NOT NULL DEFAULT 0,
                callee_name TEXT NOT NULL,
                call_line INTEGER
            )
        """)
        columns = {row[1] for row in conn.execute("PRAGMA table_info(call_edges)")}
        if "caller_column" not in columns:
            conn.execute("ALTER TABLE call_edges ADD COLUMN caller_column INTEGER NOT NULL DEFAULT 0")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_call_edges_callee ON call_edges(callee_name)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_call_edges_caller ON call_edges(caller_file, caller_name)")
        conn.commit()

    # ── Files ─────────────────────────────────────────────────────

    @staticmethod
    def get_file_hash(file_path: Path) -> str:
        """Compute SHA256 hash of file contents."""
        return hashlib.sha256(file_path.read_bytes()).hexdigest()

    def is_file_indexed(self, file_path: Path) -> bool:
        """Check if file is already indexed and up-to-date."""
        current_hash = self.get_file_hash(file_path)
        cursor = self._get_connection().execute(
            "SELECT file_hash FROM indexed_files WHERE file_path = ?",
            (normalize_path(str(file_path)),),
        )
        row = cursor.fetchone()
        return bool(row and row[0] == current_hash)

    def mark_file_indexed(self, file_path: Path, function_count: int):
        file_hash = self.get_file_hash(file_path)
        conn = self._get_connection()
        conn.execute("""
            INSERT OR REPLACE INTO indexed_files (file_path, file_hash, last_indexed, function_count)
            VALUES (?, ?, ?, ?)
        """, (normalize_path(str(file_path)), file_hash, datetime.now().isoformat(), function_count))
        conn.commit()

    def clear_file_entries(self, file_path: Path):
        """Remove all entries for a specific file (functions + call edges)."""
        path = normalize_path(str(file_path))
        conn = self._get_connection()
        conn.execute("DELETE FROM functions WHERE file_path = ?", (path,))
        conn.execute("DELETE FROM call_edges WHERE caller_file = ?", (path,))
        conn.execute("DELETE FROM indexed_files WHERE file_path = ?", (path,))
        conn.commit()

    def indexed_paths(self) -> List[str]:
        """Normalized paths of every file the index holds entries for."""
        cursor = self._get_connection().execute("""
            SELECT file_path FROM indexed_files
            UNION SELECT file_path FROM functions
            UNION SELECT caller_file FROM call_edges
            ORDER BY 1
        """)
        return [row[0] for row in cursor.fetchall()]

    def purge_missing(self, existing_files: Iterable[Path]) -> List[str]:
        """
        Drop entries for files that are no longer among *existing_files*
        (deleted, renamed, or now excluded).  Returns the purged paths.
        """
        keep = {normalize_path(str(p)) for p in existing_files}
        stale = [path for path in self.indexed_paths() if path not in keep]
        for path in stale:
            self.clear_file_entries(Path(path))
        if stale:
            logger.info(f"Removed {len(stale)} deleted file(s) from the index")
        return stale

    # ── Functions & edges ─────────────────────────────────────────

    def add_function(self, file_path: Path, metadata: FunctionMetadata,
                     relative_path: str | None = None) -> None:
        conn = self._get_connection()
        conn.execute("""
            INSERT INTO functions (file_path, function_name, line_start, line_end, language, relative_path)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (normalize_path(str(file_path)), metadata.name, metadata.start_line,
              metadata.end_line, metadata.language, relative_path))
        conn.commit()

    def add_call_edges(self, caller_file: Path, caller_name: str,
                       caller_line: int, call_sites: Iterable[CallSite],
                       caller_column: int = 0) -> None:
        """Store call edges; repeated caller → callee pairs are kept once."""
        rows = []
        seen: set = set()
        for site in call_sites:
            if site.callee_name in seen:
                continue
            seen.add(site.callee_name)
            rows.append((normalize_path(str(caller_file)), caller_name, caller_line,
                         caller_column, site.callee_name, site.line))
        if not rows:
            return
        conn = self._get_connection()
        conn.executemany("""
            INSERT INTO call_edges (caller_file, caller_name, caller_line, caller_column, callee_name, call_line)
            VALUES (?, ?, ?, ?, ?, ?)
        """, rows)
        conn.commit()

    def add_anonymous_scope(self, file_path: Path, scope: AnonymousScope) -> None:
        """Store the calls of an anonymous scope under its placeholder name and position."""
        self.add_call_edges(file_path, scope.scope, scope.line, scope.call_sites,
                            caller_column=scope.column)

    def iter_functions(self) -> List[FunctionRecord]:
        """All indexed functions, ordered by path then line."""
        cursor = self._get_connection().execute("""
            SELECT function_name, file_path, line_start, line_end, language
            FROM functions
            ORDER BY file_path, line_start, id
        """)
        return [FunctionRecord(*row) for row in cursor.fetchall()]

    def get_callers(self, function_name: str) -> List[Dict[str, Any]]:
        """Raw call-edge rows for *function_name*, joined to the caller's function row."""
        conn = self._get_connection()
        conn.row_factory = sqlite3.Row
        try:
            cursor = conn.execute("""
                SELECT ce.caller_file, ce.caller_name, ce.caller_line, ce.caller_column,
                       ce.call_line, f.function_name, f.line_start
                FROM call_edges ce
                LEFT JOIN functions f
                  ON f.file_path = ce.caller_file
                 AND f.function_name = ce.caller_name
                 AND f.line_start = ce.caller_line
                WHERE ce.callee_name = ?
                ORDER BY ce.caller_file, ce.caller_line, ce.caller_column, ce.id
            """, (function_name,))
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.row_factory = None

    def lookup_callers(self, reference: Reference) -> List[CallerElement]:
        """Caller elements for *reference*, classified by what the edge points at."""
        elements: List[CallerElement] = []
        seen: set = set()
        for row in self.get_callers(reference.display_name):
            if is_anonymous_scope(row["caller_name"]):
                element: CallerElement = AnonymousScopeElement(
                    row["caller_name"], row["caller_file"], row["caller_line"], row["caller_column"],
                )
            elif row["function_name"] is None:
                element = UnresolvedElement(
                    f"{row['caller_name']} @ {row['caller_file']}:{row['caller_line']}"
                )
            else:
                element = FunctionElement(row["function_name"], row["caller_file"], row["line_start"])
            if element in seen:
                continue
            seen.add(element)
            elements.append(element)
        return elements

    def get_stats(self) -> Dict[str, int]:
        """Get indexing statistics (files, functions, and call edges)."""
        conn = self._get_connection()
        file_count = conn.execute("SELECT COUNT(*) FROM indexed_files").fetchone()[0]
        function_count = conn.execute("SELECT COUNT(*) FROM functions").fetchone()[0]
        edge_count = conn.execute("SELECT COUNT(*) FROM call_edges").fetchone()[0]
        return {
            "indexed_files": file_count,
            "indexed_functions": function_count,
            "call_edges": edge_count,
        }


# =============================================================================
# Utility Functions
# =============================================================================

def scan_directory(root_path: Path, config: QuerytrailConfig | None = None,
                   extensions: Iterable[str] | None = None) -> List[Path]:
    """
    Recursively collect files whose suffix is in *extensions*.

    Defaults to ``config.source_extensions``.  Excluded directories are
    pruned in place so ``os.walk`` never descends into them.
    """
    import os

    cfg = config or QuerytrailConfig.from_env()
    exclude = cfg.exclude_dirs
    wanted = frozenset(extensions) if extensions is not None else cfg.source_extensions
    max_bytes = cfg.max_file_size_mb * 1024 * 1024
    found: List[Path] = []

    for dirpath, dirnames, filenames in os.walk(root_path):
        dirnames[:] = [d for d in dirnames if d not in exclude]

        for fname in filenames:
            _, ext = os.path.splitext(fname)
            if ext.lower() not in wanted:
                continue

            full = os.path.join(dirpath, fname)
            try:
                size = os.path.getsize(full)
            except OSError:
                continue

            if size <= max_bytes:
                found.append(Path(full))
            else:
                logger.warning(
                    f"Skipping large file: {full} ({size / (1024 * 1024):.1f}MB)"
                )

    found.sort()
    return found
