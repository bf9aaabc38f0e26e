"""
Tree-sitter entity extraction.

Turns the contents of one source file into :class:`~codegraph_kb.models.CodeEntity`
records (functions, types, modules) carrying location, signature, body text,
visibility and the raw names each entity calls or references.

Every supported language is a :class:`LanguageExtractor` subclass registered
with :func:`register`; the concrete grammars live in
:mod:`codegraph_kb.languages`.  Extraction is a pure function of the file
contents: no network, no other files.

Uses tree-sitter >= 0.22 API with individual language packages.
"""

from __future__ import annotations

import hashlib
import importlib
import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from .complexity import ComplexityScorer, get_default_scorer
from .errors import ParseError
from .models import CodeEntity, EntityKind, RawReference, RefKind, make_entity_id
from .test_detector import TestDetector, default_detector

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """All entities extracted from a single source file."""
    file_path: str
    language: str
    hash: str
    entities: list[CodeEntity] = field(default_factory=list)
    line_count: int = 0


def compute_hash(source_bytes: bytes) -> str:
    return hashlib.sha256(source_bytes).hexdigest()


# ---------------------------------------------------------------------------
# Node text helpers
# ---------------------------------------------------------------------------

def _text(node) -> str:
    """Decode a tree-sitter Node's text as UTF-8."""
    if node is None:
        return ""
    return node.text.decode("utf-8", errors="replace") if node.text else ""


def _normalize_ws(text: str) -> str:
    return " ".join(text.split())


_IDENTIFIER_TYPES = frozenset({
    "identifier", "field_identifier", "property_identifier", "type_identifier",
    "name", "constant", "namespace_identifier", "private_property_identifier",
    "shorthand_property_identifier", "simple_identifier",
})


def split_callee(fn_node) -> Optional[tuple[str, str]]:
    """
    Split a callee expression into ``(name, qualifier)``.

    ``foo`` → ("foo", ""), ``self.foo`` → ("foo", "self"),
    ``a.b.c`` → ("c", "a.b"), ``Foo::new`` → ("new", "Foo").
    """
    if fn_node is None:
        return None
    if fn_node.type in _IDENTIFIER_TYPES:
        name = _text(fn_node)
        return (name, "") if name else None
    named = fn_node.named_children
    if not named:
        return None
    last = named[-1]
    # Unwrap generic callee forms like foo::<T>() or Foo<T>()
    if last.type in ("type_arguments", "generic_arguments", "type_argument_list",
                     "template_argument_list") and len(named) > 1:
        last = named[-2]
    if last.type not in _IDENTIFIER_TYPES:
        if last.type in ("generic_name", "generic_type", "scoped_identifier", "qualified_identifier",
                         "qualified_name", "scoped_type_identifier", "member_expression",
                         "field_expression", "attribute", "selector_expression"):
            return split_callee(last)
        return None
    name = _text(last)
    qualifier = ""
    if len(named) > 1 and named[0] is not last:
        qualifier = _text(named[0])
    return (name, qualifier) if name else None


def _first_error_line(root) -> Optional[int]:
    """Return the 1-based line of the first ERROR/MISSING node under *root*."""
    best: Optional[int] = None
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR" or node.is_missing:
            line = node.start_point[0] + 1
            if best is None or line < best:
                best = line
            continue
        if node.has_error:
            stack.extend(node.children)
    return best


# ---------------------------------------------------------------------------
# Parser cache (tree-sitter parsers are not shareable across threads)
# ---------------------------------------------------------------------------

_LANG_CACHE: dict[str, object] = {}
_LANG_LOCK = threading.Lock()
_THREAD_LOCAL = threading.local()


def _load_ts_language(module_name: str, attr: str):
    """Return a cached ``tree_sitter.Language`` for a grammar package, or None."""
    key = f"{module_name}.{attr}"
    with _LANG_LOCK:
        if key in _LANG_CACHE:
            return _LANG_CACHE[key]
        try:
            import tree_sitter as ts
            mod = importlib.import_module(module_name)
            lang_obj = ts.Language(getattr(mod, attr)())
        except (ImportError, AttributeError, ValueError, TypeError) as exc:
            logger.debug("Cannot load tree-sitter grammar %s: %s", key, exc)
            lang_obj = None
        _LANG_CACHE[key] = lang_obj
        return lang_obj


def _thread_parser(module_name: str, attr: str):
    """Return a per-thread ``tree_sitter.Parser`` for a grammar, or None."""
    parsers = getattr(_THREAD_LOCAL, "parsers", None)
    if parsers is None:
        parsers = _THREAD_LOCAL.parsers = {}
    key = f"{module_name}.{attr}"
    if key in parsers:
        return parsers[key]
    lang_obj = _load_ts_language(module_name, attr)
    parser = None
    if lang_obj is not None:
        import tree_sitter as ts
        parser = ts.Parser(lang_obj)
    parsers[key] = parser
    return parser


# ---------------------------------------------------------------------------
# Extractor interface
# ---------------------------------------------------------------------------

class LanguageExtractor(ABC):
    """Capability interface: one implementation per source language."""

    language: str = ""
    extensions: tuple[str, ...] = ()
    shebangs: tuple[str, ...] = ()

    @abstractmethod
    def extract(self, source: bytes | str, file_path: str) -> ExtractionResult:
        """
        Extract entities from *source*.

        Raises
        ------
        ParseError
            When the source is syntactically invalid.  ``error.partial``
            holds the entities recovered before the failure point.
        """

    @abstractmethod
    def available(self) -> bool:
        """Return True if the backing grammar can be loaded."""


class _WalkContext:
    def __init__(self, file_path: str, test_file: bool) -> None:
        self.file_path = file_path
        self.test_file = test_file
        self.entities: list[CodeEntity] = []
        self.seen_ids: set[str] = set()


class TreeSitterExtractor(LanguageExtractor):
    """
    Generic concrete-syntax-tree walker configured by class attributes.

    Subclasses declare which node types are functions, types, modules,
    containers (e.g. Rust ``impl`` blocks), calls, type references and
    imports, and override the small hooks below where a grammar needs it.
    """

    grammar_module: str = ""
    grammar_attr: str = "language"

    function_types: frozenset[str] = frozenset()
    type_types: frozenset[str] = frozenset()
    module_types: frozenset[str] = frozenset()
    container_types: frozenset[str] = frozenset()
    call_types: frozenset[str] = frozenset()
    type_ref_types: frozenset[str] = frozenset()
    import_types: frozenset[str] = frozenset()

    name_field = "name"
    body_field = "body"
    call_function_field = "function"
    module_index_names: tuple[str, ...] = ()

    def __init__(
        self,
        detector: Optional[TestDetector] = None,
        complexity_scorer: Optional[ComplexityScorer] = None,
    ) -> None:
        self.detector = detector or default_detector()
        self.complexity_scorer = complexity_scorer or get_default_scorer()

    # ------------------------------------------------------------------
    # Grammar
    # ------------------------------------------------------------------

    def available(self) -> bool:
        return _load_ts_language(self.grammar_module, self.grammar_attr) is not None

    def _parser(self, file_path: str):
        parser = _thread_parser(self.grammar_module, self.grammar_attr)
        if parser is None:
            raise ParseError(
                f"tree-sitter grammar unavailable for {self.language}",
                file_path=file_path,
                partial=ExtractionResult(file_path=file_path, language=self.language, hash=""),
            )
        return parser

    # ------------------------------------------------------------------
    # Hooks (override per language)
    # ------------------------------------------------------------------

    def classify(self, node) -> Optional[str]:
        """Return the :class:`EntityKind` for *node*, or None if not an entity."""
        ntype = node.type
        if ntype in self.function_types:
            return EntityKind.FUNCTION
        if ntype in self.type_types:
            return EntityKind.TYPE
        if ntype in self.module_types:
            return EntityKind.MODULE
        return None

    def definition_node(self, node):
        """Unwrap wrapper nodes (decorators, exports) to the real definition."""
        return node

    def entity_name(self, node) -> str:
        return _text(node.child_by_field_name(self.name_field))

    def explicit_parent(self, node) -> Optional[str]:
        """Parent type declared outside lexical nesting (Go receivers, C++ ``A::f``)."""
        return None

    def body_node(self, node):
        return node.child_by_field_name(self.body_field)

    def signature_text(self, node) -> str:
        raw = node.text or b""
        body = self.body_node(node)
        if body is not None and body.start_byte > node.start_byte:
            header = raw[: body.start_byte - node.start_byte]
        else:
            header = raw.split(b"\n", 1)[0]
        text = _normalize_ws(header.decode("utf-8", errors="replace"))
        if text.endswith("=>"):
            text = text[:-2]
        return text.rstrip().rstrip("{:").rstrip()

    def is_public(self, node, name: str, signature: str) -> bool:
        return not name.startswith("_")

    def attributes_text(self, node) -> str:
        return ""

    def container_name(self, node) -> Optional[str]:
        return None

    def callee(self, node) -> Optional[tuple[str, str]]:
        return split_callee(node.child_by_field_name(self.call_function_field))

    def type_names(self, node) -> list[str]:
        name = _text(node)
        return [name] if name else []

    def import_names(self, node) -> list[str]:
        return []

    def base_types(self, node) -> list[str]:
        return []

    def module_name(self, file_path: str) -> str:
        """Dotted module name for a file path."""
        stem = os.path.splitext(file_path.replace("\\", "/"))[0]
        dotted = stem.strip("/").replace("/", ".")
        for index_name in self.module_index_names:
            suffix = "." + index_name
            if dotted.endswith(suffix):
                return dotted[: -len(suffix)]
        return dotted

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract(self, source: bytes | str, file_path: str) -> ExtractionResult:
        source_bytes = source.encode("utf-8") if isinstance(source, str) else source
        file_path = file_path.replace("\\", "/")
        parser = self._parser(file_path)
        tree = parser.parse(source_bytes)
        root = tree.root_node

        lines = source_bytes.decode("utf-8", errors="replace").splitlines()
        result = ExtractionResult(
            file_path=file_path,
            language=self.language,
            hash=compute_hash(source_bytes),
            line_count=len(lines),
        )
        ctx = _WalkContext(file_path, self.detector.is_test_path(file_path))
        self._walk(root, ctx, scope=[], parent_type=None, in_test=ctx.test_file)

        error_line = _first_error_line(root) if root.has_error else None
        if error_line is None:
            result.entities = [self._module_entity(root, ctx, lines, None)] + ctx.entities
            return result

        kept = [e for e in ctx.entities if e.line_end < error_line]
        if error_line > 1:
            kept.insert(0, self._module_entity(root, ctx, lines, error_line))
        result.entities = kept
        logger.debug(
            "Syntax error in %s at line %d; recovered %d entities",
            file_path, error_line, len(kept),
        )
        raise ParseError(
            f"syntax error at line {error_line}",
            file_path=file_path,
            line=error_line,
            partial=result,
        )

    def _walk(self, node, ctx: _WalkContext, scope: list[str],
              parent_type: Optional[str], in_test: bool) -> None:
        for child in node.children:
            if not child.is_named:
                continue
            kind = self.classify(child)
            if kind is None:
                if child.type in self.container_types:
                    cname = self.container_name(child)
                    inner_scope = scope + [cname] if cname else scope
                    self._walk(child, ctx, inner_scope, cname or parent_type, in_test)
                elif child.named_child_count:
                    self._walk(child, ctx, scope, parent_type, in_test)
                continue

            entity = self._build_entity(child, kind, ctx, scope, parent_type, in_test)
            if entity is None:
                self._walk(child, ctx, scope, parent_type, in_test)
                continue
            if entity.entity_kind == EntityKind.TYPE:
                next_parent: Optional[str] = entity.name
            elif entity.entity_kind == EntityKind.MODULE:
                next_parent = None
            else:
                next_parent = entity.parent_name
            inner_scope = entity.qualified_name.split(".") if entity.qualified_name else scope
            self._walk(self.definition_node(child), ctx, inner_scope, next_parent, entity.is_test)

    def _build_entity(self, outer, kind: str, ctx: _WalkContext, scope: list[str],
                      parent_type: Optional[str], in_test: bool) -> Optional[CodeEntity]:
        node = self.definition_node(outer)
        name = self.entity_name(node)
        if not name:
            return None
        explicit = self.explicit_parent(node)
        parent = explicit or (parent_type if kind != EntityKind.MODULE else None)
        qual_scope = scope + [explicit] if explicit and (not scope or scope[-1] != explicit) else scope
        qualified = ".".join(qual_scope + [name])

        line_start = outer.start_point[0] + 1
        line_end = outer.end_point[0] + 1
        entity_id = make_entity_id(
            self.language, kind, qualified, ctx.file_path, line_start, line_end,
        )
        if entity_id in ctx.seen_ids:
            return None
        ctx.seen_ids.add(entity_id)

        signature = self.signature_text(node)
        attributes = self.attributes_text(outer)
        is_test = (
            in_test
            or self.detector.is_test_entity(self.language, name, attributes, ctx.file_path)
        )

        refs = [RawReference(b, RefKind.INHERIT) for b in self.base_types(node) if b and b != name]
        refs.extend(self._collect_refs(node, exclude_name=name if kind == EntityKind.TYPE else None))

        entity = CodeEntity(
            entity_id=entity_id,
            entity_kind=kind,
            language=self.language,
            name=name,
            qualified_name=qualified,
            file_path=ctx.file_path,
            line_start=line_start,
            line_end=line_end,
            signature=signature,
            body_text=_text(outer),
            is_public=self.is_public(node, name, signature),
            is_test=is_test,
            complexity_score=(
                self.complexity_scorer(node, self.language)
                if kind == EntityKind.FUNCTION else None
            ),
            parent_name=parent,
            raw_refs=_dedupe_refs(refs),
        )
        ctx.entities.append(entity)
        return entity

    def _collect_refs(self, node, exclude_name: Optional[str] = None,
                      limit_line: Optional[int] = None) -> list[RawReference]:
        """
        Collect raw references below *node* in source order, without
        descending into nested entity definitions.
        """
        refs: list[RawReference] = []
        stack = list(reversed(node.children))
        while stack:
            current = stack.pop()
            if limit_line is not None and current.end_point[0] + 1 >= limit_line:
                continue
            if current.is_named and self.classify(current) is not None:
                continue
            ntype = current.type
            if ntype in self.import_types:
                for imp in self.import_names(current):
                    refs.append(RawReference(imp, RefKind.IMPORT))
            if ntype in self.call_types:
                called = self.callee(current)
                if called is not None:
                    refs.append(RawReference(called[0], RefKind.CALL, called[1]))
            if ntype in self.type_ref_types:
                for tname in self.type_names(current):
                    if tname != exclude_name:
                        refs.append(RawReference(tname, RefKind.TYPE))
                continue
            stack.extend(reversed(current.children))
        return refs

    def _module_entity(self, root, ctx: _WalkContext, lines: list[str],
                       error_line: Optional[int]) -> CodeEntity:
        """The per-file module entity: top-level code not owned by other entities."""
        last_line = max(len(lines), 1) if error_line is None else error_line - 1
        covered: set[int] = set()
        for e in ctx.entities:
            if e.line_end <= last_line:
                covered.update(range(e.line_start, e.line_end + 1))
        body_lines = [
            lines[i - 1] for i in range(1, min(last_line, len(lines)) + 1)
            if i not in covered
        ]
        body = "\n".join(body_lines).strip("\n")

        dotted = self.module_name(ctx.file_path)
        refs = self._collect_refs(root, limit_line=error_line)
        return CodeEntity(
            entity_id=make_entity_id(
                self.language, EntityKind.MODULE, dotted, ctx.file_path, 1, last_line,
            ),
            entity_kind=EntityKind.MODULE,
            language=self.language,
            name=dotted.rsplit(".", 1)[-1],
            qualified_name=dotted,
            file_path=ctx.file_path,
            line_start=1,
            line_end=last_line,
            signature=f"module {dotted}",
            body_text=body,
            is_public=True,
            is_test=ctx.test_file,
            raw_refs=_dedupe_refs(refs),
        )


def _dedupe_refs(refs: list[RawReference]) -> list[RawReference]:
    seen: set[RawReference] = set()
    out: list[RawReference] = []
    for ref in refs:
        if ref.name and ref not in seen:
            seen.add(ref)
            out.append(ref)
    return out


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_REGISTRY: dict[str, type[LanguageExtractor]] = {}
_BUILTINS_LOADED = False


def register(cls: type[LanguageExtractor]) -> type[LanguageExtractor]:
    """Class decorator adding an extractor to the registry (keyed by extension)."""
    for ext in cls.extensions:
        _REGISTRY[ext.lower()] = cls
    return cls


def _load_builtin_languages() -> None:
    global _BUILTINS_LOADED
    if not _BUILTINS_LOADED:
        _BUILTINS_LOADED = True
        importlib.import_module(".languages", __package__)


def registered_extensions() -> dict[str, str]:
    """Return ``{extension: language}`` for every registered extractor."""
    _load_builtin_languages()
    return {ext: cls.language for ext, cls in _REGISTRY.items()}


def _shebang_extractor(head: bytes) -> Optional[type[LanguageExtractor]]:
    if not head.startswith(b"#!"):
        return None
    first = head.split(b"\n", 1)[0].decode("utf-8", errors="replace")
    for cls in dict.fromkeys(_REGISTRY.values()):
        if any(interp in first for interp in cls.shebangs):
            return cls
    return None


def extractor_class_for(file_path: str, head: bytes = b"") -> Optional[type[LanguageExtractor]]:
    """Pick the extractor class for *file_path* by extension, then shebang."""
    _load_builtin_languages()
    ext = os.path.splitext(file_path)[1].lower()
    if ext in _REGISTRY:
        return _REGISTRY[ext]
    if not ext and head:
        return _shebang_extractor(head)
    return None


def detect_language(file_path: str, head: bytes = b"") -> Optional[str]:
    """Return the language name for *file_path*, or None if unsupported."""
    cls = extractor_class_for(file_path, head)
    return cls.language if cls is not None else None


class ExtractorRegistry:
    """
    Per-run cache of extractor instances sharing one test detector and
    complexity scorer.
    """

    def __init__(
        self,
        detector: Optional[TestDetector] = None,
        complexity_scorer: Optional[ComplexityScorer] = None,
    ) -> None:
        self.detector = detector or default_detector()
        self.complexity_scorer = complexity_scorer
        self._instances: dict[type, LanguageExtractor] = {}
        self._lock = threading.Lock()

    def for_path(self, file_path: str, head: bytes = b"") -> Optional[LanguageExtractor]:
        cls = extractor_class_for(file_path, head)
        if cls is None:
            return None
        with self._lock:
            inst = self._instances.get(cls)
            if inst is None:
                inst = cls(detector=self.detector, complexity_scorer=self.complexity_scorer)
                self._instances[cls] = inst
        return inst

    def extract(self, source: bytes, file_path: str) -> ExtractionResult:
        """
        Extract *source* with the extractor matching *file_path*.

        Raises
        ------
        ParseError
            For unsupported files and syntactically invalid input.
        """
        extractor = self.for_path(file_path, source[:256])
        if extractor is None:
            raise ParseError(
                "unsupported file type",
                file_path=file_path,
                partial=ExtractionResult(file_path=file_path, language="unknown",
                                         hash=compute_hash(source)),
            )
        return extractor.extract(source, file_path)


def extract_source(
    source: bytes | str,
    file_path: str,
    detector: Optional[TestDetector] = None,
) -> ExtractionResult:
    """Convenience wrapper: extract one in-memory file."""
    source_bytes = source.encode("utf-8") if isinstance(source, str) else source
    return ExtractorRegistry(detector=detector).extract(source_bytes, file_path)
