"""
Built-in language extractors.

Each class maps one tree-sitter grammar onto the generic walker in
:mod:`codegraph_kb.extractor`.  Node type names follow the grammar packages
pinned in ``setup.py``.
"""

from __future__ import annotations

import re
from typing import Optional

from .extractor import TreeSitterExtractor, _text, register, split_callee
from .models import EntityKind

_GENERIC_RE = re.compile(r"<.*$", re.S)
_USE_ALIAS_RE = re.compile(r"\s+as\s+")


def _strip_quotes(text: str) -> str:
    return text.strip().strip("'\"`<>")


def _path_to_dotted(path: str) -> str:
    """``./utils/helpers.js`` → ``utils.helpers``."""
    path = _strip_quotes(path)
    while path.startswith("./") or path.startswith("../"):
        path = path.split("/", 1)[1]
    for ext in (".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".h", ".hpp", ".rb", ".php"):
        if path.endswith(ext):
            path = path[: -len(ext)]
            break
    return path.strip("/").replace("/", ".")


def _descendant_texts(node, types: frozenset[str]) -> list[str]:
    out: list[str] = []
    if node is None:
        return out
    stack = [node]
    while stack:
        current = stack.pop()
        if current.type in types:
            out.append(_text(current))
            continue
        stack.extend(reversed(current.children))
    return out


def _child_of_type(node, *types: str):
    for child in node.children:
        if child.type in types:
            return child
    return None


# ---------------------------------------------------------------------------
# Python
# ---------------------------------------------------------------------------

@register
class PythonExtractor(TreeSitterExtractor):
    language = "python"
    extensions = (".py", ".pyi")
    shebangs = ("python",)
    grammar_module = "tree_sitter_python"

    function_types = frozenset({"function_definition"})
    type_types = frozenset({"class_definition"})
    call_types = frozenset({"call"})
    type_ref_types = frozenset({"type"})
    import_types = frozenset({"import_statement", "import_from_statement"})
    module_index_names = ("__init__",)

    def classify(self, node) -> Optional[str]:
        if node.type == "decorated_definition":
            inner = node.child_by_field_name("definition")
            return super().classify(inner) if inner is not None else None
        return super().classify(node)

    def definition_node(self, node):
        if node.type == "decorated_definition":
            return node.child_by_field_name("definition") or node
        return node

    def is_public(self, node, name: str, signature: str) -> bool:
        if name.startswith("__") and name.endswith("__"):
            return True
        return not name.startswith("_")

    def type_names(self, node) -> list[str]:
        return _descendant_texts(node, frozenset({"identifier"}))

    def base_types(self, node) -> list[str]:
        supers = node.child_by_field_name("superclasses")
        if supers is None:
            return []
        out = []
        for child in supers.named_children:
            if child.type == "identifier":
                out.append(_text(child))
            elif child.type == "attribute":
                out.append(_text(child.child_by_field_name("attribute")))
        return out

    def import_names(self, node) -> list[str]:
        if node.type == "import_statement":
            names = []
            for child in node.named_children:
                if child.type == "aliased_import":
                    child = child.child_by_field_name("name")
                if child is not None and child.type == "dotted_name":
                    names.append(_text(child))
            return names
        module = node.child_by_field_name("module_name")
        module_text = _text(module).lstrip(".")
        if module_text:
            return [module_text]
        # "from . import sibling"
        return [
            _text(c) for c in node.children_by_field_name("name")
            if c.type == "dotted_name"
        ]


# ---------------------------------------------------------------------------
# JavaScript / TypeScript
# ---------------------------------------------------------------------------

_JS_FUNCTION_VALUES = frozenset({
    "arrow_function", "function_expression", "function", "generator_function",
})


@register
class JavaScriptExtractor(TreeSitterExtractor):
    language = "javascript"
    extensions = (".js", ".jsx", ".mjs", ".cjs")
    shebangs = ("node",)
    grammar_module = "tree_sitter_javascript"

    function_types = frozenset({
        "function_declaration", "generator_function_declaration", "method_definition",
    })
    type_types = frozenset({"class_declaration"})
    call_types = frozenset({"call_expression", "new_expression"})
    import_types = frozenset({"import_statement", "call_expression"})
    module_index_names = ("index",)

    def classify(self, node) -> Optional[str]:
        if node.type == "variable_declarator":
            value = node.child_by_field_name("value")
            if value is not None and value.type in _JS_FUNCTION_VALUES:
                return EntityKind.FUNCTION
            return None
        return super().classify(node)

    def body_node(self, node):
        if node.type == "variable_declarator":
            value = node.child_by_field_name("value")
            return value.child_by_field_name("body") if value is not None else None
        return node.child_by_field_name("body")

    def is_public(self, node, name: str, signature: str) -> bool:
        return not (name.startswith("_") or name.startswith("#"))

    def callee(self, node) -> Optional[tuple[str, str]]:
        if node.type == "new_expression":
            return split_callee(node.child_by_field_name("constructor"))
        fn = node.child_by_field_name("function")
        if fn is not None and _text(fn) == "require":
            return None
        return split_callee(fn)

    def import_names(self, node) -> list[str]:
        if node.type == "import_statement":
            source = node.child_by_field_name("source")
            return [_path_to_dotted(_text(source))] if source is not None else []
        fn = node.child_by_field_name("function")
        if fn is None or _text(fn) != "require":
            return []
        args = node.child_by_field_name("arguments")
        strings = _descendant_texts(args, frozenset({"string"}))
        return [_path_to_dotted(strings[0])] if strings else []

    def base_types(self, node) -> list[str]:
        heritage = _child_of_type(node, "class_heritage")
        if heritage is None:
            return []
        names = _descendant_texts(heritage, frozenset({"identifier", "type_identifier"}))
        return [n for n in names if n]


@register
class TypeScriptExtractor(JavaScriptExtractor):
    language = "typescript"
    extensions = (".ts", ".mts", ".cts")
    shebangs = ()
    grammar_module = "tree_sitter_typescript"
    grammar_attr = "language_typescript"

    type_types = frozenset({
        "class_declaration", "abstract_class_declaration", "interface_declaration",
        "type_alias_declaration", "enum_declaration",
    })
    module_types = frozenset({"internal_module", "module"})
    type_ref_types = frozenset({"type_identifier"})

    def is_public(self, node, name: str, signature: str) -> bool:
        modifier = _child_of_type(node, "accessibility_modifier")
        if modifier is not None and _text(modifier) in ("private", "protected"):
            return False
        return super().is_public(node, name, signature)


@register
class TsxExtractor(TypeScriptExtractor):
    extensions = (".tsx",)
    grammar_attr = "language_tsx"


# ---------------------------------------------------------------------------
# Go
# ---------------------------------------------------------------------------

@register
class GoExtractor(TreeSitterExtractor):
    language = "go"
    extensions = (".go",)
    grammar_module = "tree_sitter_go"

    function_types = frozenset({"function_declaration", "method_declaration"})
    type_types = frozenset({"type_spec", "type_alias"})
    call_types = frozenset({"call_expression"})
    type_ref_types = frozenset({"type_identifier"})
    import_types = frozenset({"import_spec"})

    def explicit_parent(self, node) -> Optional[str]:
        if node.type != "method_declaration":
            return None
        receiver = node.child_by_field_name("receiver")
        names = _descendant_texts(receiver, frozenset({"type_identifier"}))
        return names[0] if names else None

    def signature_text(self, node) -> str:
        if node.type in self.type_types:
            head = _text(node).split("{", 1)[0].split("\n", 1)[0]
            return "type " + " ".join(head.split())
        return super().signature_text(node)

    def is_public(self, node, name: str, signature: str) -> bool:
        return name[:1].isupper()

    def import_names(self, node) -> list[str]:
        path = node.child_by_field_name("path")
        text = _strip_quotes(_text(path))
        return [text.replace("/", ".")] if text else []


# ---------------------------------------------------------------------------
# Rust
# ---------------------------------------------------------------------------

@register
class RustExtractor(TreeSitterExtractor):
    language = "rust"
    extensions = (".rs",)
    grammar_module = "tree_sitter_rust"

    function_types = frozenset({"function_item"})
    type_types = frozenset({
        "struct_item", "enum_item", "trait_item", "union_item", "type_item",
    })
    module_types = frozenset({"mod_item"})
    container_types = frozenset({"impl_item"})
    call_types = frozenset({"call_expression"})
    type_ref_types = frozenset({"type_identifier"})
    import_types = frozenset({"use_declaration"})

    def container_name(self, node) -> Optional[str]:
        type_node = node.child_by_field_name("type")
        name = _GENERIC_RE.sub("", _text(type_node)).strip()
        return name.rsplit("::", 1)[-1] or None

    def is_public(self, node, name: str, signature: str) -> bool:
        if _child_of_type(node, "visibility_modifier") is not None:
            return True
        holder = node.parent.parent if node.parent is not None else None
        if holder is not None:
            if holder.type == "trait_item":
                return True
            if holder.type == "impl_item" and holder.child_by_field_name("trait") is not None:
                return True
        return False

    def attributes_text(self, node) -> str:
        parts: list[str] = []
        sib = node.prev_named_sibling
        while sib is not None and sib.type in ("attribute_item", "line_comment", "block_comment"):
            if sib.type == "attribute_item":
                parts.append(_text(sib))
            sib = sib.prev_named_sibling
        return " ".join(reversed(parts))

    @staticmethod
    def _use_path(item: str) -> str:
        item = _USE_ALIAS_RE.split(item.strip(), 1)[0]
        return "".join(item.split())

    def import_names(self, node) -> list[str]:
        text = _text(node.child_by_field_name("argument"))
        if "{" not in text:
            path = self._use_path(text)
            return [path.replace("::", ".")] if path else []
        prefix, _, rest = text.partition("{")
        prefix = self._use_path(prefix).rstrip(":")
        names = []
        for item in rest.rstrip().rstrip("}").split(","):
            item = self._use_path(item)
            if item == "self" and prefix:
                names.append(prefix.replace("::", "."))
            elif item and item != "*" and "{" not in item and "}" not in item:
                names.append(f"{prefix}::{item}".replace("::", "."))
        return names


# ---------------------------------------------------------------------------
# Java
# ---------------------------------------------------------------------------

@register
class JavaExtractor(TreeSitterExtractor):
    language = "java"
    extensions = (".java",)
    grammar_module = "tree_sitter_java"

    function_types = frozenset({"method_declaration", "constructor_declaration"})
    type_types = frozenset({
        "class_declaration", "interface_declaration", "enum_declaration",
        "record_declaration", "annotation_type_declaration",
    })
    call_types = frozenset({"method_invocation", "object_creation_expression"})
    type_ref_types = frozenset({"type_identifier"})
    import_types = frozenset({"import_declaration"})

    def _modifiers(self, node) -> str:
        return _text(_child_of_type(node, "modifiers"))

    def is_public(self, node, name: str, signature: str) -> bool:
        modifiers = self._modifiers(node).split()
        if "public" in modifiers:
            return True
        holder = node.parent.parent if node.parent is not None else None
        return holder is not None and holder.type == "interface_declaration"

    def attributes_text(self, node) -> str:
        return self._modifiers(node)

    def callee(self, node) -> Optional[tuple[str, str]]:
        if node.type == "object_creation_expression":
            names = _descendant_texts(node.child_by_field_name("type"),
                                      frozenset({"type_identifier"}))
            return (names[0], "") if names else None
        name = _text(node.child_by_field_name("name"))
        if not name:
            return None
        return name, _text(node.child_by_field_name("object"))

    def base_types(self, node) -> list[str]:
        out: list[str] = []
        for field_name in ("superclass", "interfaces"):
            out.extend(_descendant_texts(node.child_by_field_name(field_name),
                                         frozenset({"type_identifier"})))
        return out

    def import_names(self, node) -> list[str]:
        target = _child_of_type(node, "scoped_identifier", "identifier")
        return [_text(target)] if target is not None else []


# ---------------------------------------------------------------------------
# C / C++
# ---------------------------------------------------------------------------

_C_NAME_TYPES = frozenset({
    "identifier", "field_identifier", "type_identifier", "destructor_name",
    "operator_name", "qualified_identifier",
})


def _innermost_declarator(node):
    decl = node.child_by_field_name("declarator")
    while decl is not None and decl.type not in _C_NAME_TYPES:
        nxt = decl.child_by_field_name("declarator")
        if nxt is None:
            return None
        decl = nxt
    return decl


@register
class CExtractor(TreeSitterExtractor):
    language = "c"
    extensions = (".c", ".h")
    grammar_module = "tree_sitter_c"

    function_types = frozenset({"function_definition"})
    type_types = frozenset({"struct_specifier", "enum_specifier", "union_specifier"})
    call_types = frozenset({"call_expression"})
    type_ref_types = frozenset({"type_identifier"})
    import_types = frozenset({"preproc_include"})

    def classify(self, node) -> Optional[str]:
        if node.type in self.type_types:
            has_body = node.child_by_field_name("body") is not None
            return EntityKind.TYPE if has_body and node.child_by_field_name("name") else None
        if node.type == "type_definition":
            inner = node.child_by_field_name("type")
            if (inner is not None and inner.type in self.type_types
                    and inner.child_by_field_name("body") is not None
                    and inner.child_by_field_name("name") is None):
                return EntityKind.TYPE
            return None
        return super().classify(node)

    def entity_name(self, node) -> str:
        if node.type == "function_definition":
            decl = _innermost_declarator(node)
            if decl is None:
                return ""
            while decl.type == "qualified_identifier":
                decl = decl.child_by_field_name("name")
                if decl is None:
                    return ""
            return _text(decl)
        if node.type == "type_definition":
            return _text(node.child_by_field_name("declarator"))
        return super().entity_name(node)

    def is_public(self, node, name: str, signature: str) -> bool:
        for child in node.children:
            if child.type == "storage_class_specifier" and _text(child) == "static":
                return False
        return True

    def import_names(self, node) -> list[str]:
        path = node.child_by_field_name("path")
        return [_path_to_dotted(_text(path))] if path is not None else []


@register
class CppExtractor(CExtractor):
    language = "cpp"
    extensions = (".cpp", ".cc", ".cxx", ".hpp", ".hxx", ".hh")
    grammar_module = "tree_sitter_cpp"

    type_types = frozenset({
        "struct_specifier", "enum_specifier", "union_specifier", "class_specifier",
    })
    module_types = frozenset({"namespace_definition"})

    def explicit_parent(self, node) -> Optional[str]:
        if node.type != "function_definition":
            return None
        decl = _innermost_declarator(node)
        scope = None
        while decl is not None and decl.type == "qualified_identifier":
            scope = decl.child_by_field_name("scope")
            decl = decl.child_by_field_name("name")
        if scope is None:
            return None
        return _GENERIC_RE.sub("", _text(scope)).rsplit("::", 1)[-1] or None

    def is_public(self, node, name: str, signature: str) -> bool:
        if not super().is_public(node, name, signature):
            return False
        body = node.parent
        if body is None or body.type != "field_declaration_list":
            return True
        sib = node.prev_sibling
        while sib is not None:
            if sib.type == "access_specifier":
                return _text(sib).strip() == "public"
            sib = sib.prev_sibling
        owner = body.parent
        return owner is None or owner.type != "class_specifier"


# ---------------------------------------------------------------------------
# Ruby
# ---------------------------------------------------------------------------

_RUBY_REQUIRES = ("require", "require_relative", "load")


@register
class RubyExtractor(TreeSitterExtractor):
    language = "ruby"
    extensions = (".rb",)
    shebangs = ("ruby",)
    grammar_module = "tree_sitter_ruby"

    function_types = frozenset({"method", "singleton_method"})
    type_types = frozenset({"class"})
    module_types = frozenset({"module"})
    call_types = frozenset({"call"})
    import_types = frozenset({"call"})

    def entity_name(self, node) -> str:
        name = node.child_by_field_name("name")
        if name is not None and name.type == "scope_resolution":
            name = name.child_by_field_name("name")
        return _text(name)

    def callee(self, node) -> Optional[tuple[str, str]]:
        method = _text(node.child_by_field_name("method"))
        if not method or method in _RUBY_REQUIRES:
            return None
        receiver = node.child_by_field_name("receiver")
        if method == "new" and receiver is not None:
            return _text(receiver).rsplit("::", 1)[-1], ""
        return method, _text(receiver)

    def import_names(self, node) -> list[str]:
        if _text(node.child_by_field_name("method")) not in _RUBY_REQUIRES:
            return []
        contents = _descendant_texts(node.child_by_field_name("arguments"),
                                     frozenset({"string_content"}))
        return [_path_to_dotted(contents[0])] if contents else []

    def base_types(self, node) -> list[str]:
        superclass = node.child_by_field_name("superclass")
        names = _descendant_texts(superclass, frozenset({"constant"}))
        return names[-1:] if names else []


# ---------------------------------------------------------------------------
# PHP
# ---------------------------------------------------------------------------

@register
class PhpExtractor(TreeSitterExtractor):
    language = "php"
    extensions = (".php",)
    shebangs = ("php",)
    grammar_module = "tree_sitter_php"
    grammar_attr = "language_php"

    function_types = frozenset({"function_definition", "method_declaration"})
    type_types = frozenset({
        "class_declaration", "interface_declaration", "trait_declaration", "enum_declaration",
    })
    module_types = frozenset({"namespace_definition"})
    call_types = frozenset({
        "function_call_expression", "member_call_expression",
        "nullsafe_member_call_expression", "scoped_call_expression",
        "object_creation_expression",
    })
    type_ref_types = frozenset({"named_type"})
    import_types = frozenset({"namespace_use_clause"})

    @staticmethod
    def _last_segment(text: str) -> str:
        return text.rsplit("\\", 1)[-1]

    def is_public(self, node, name: str, signature: str) -> bool:
        modifier = _child_of_type(node, "visibility_modifier")
        return modifier is None or _text(modifier) == "public"

    def callee(self, node) -> Optional[tuple[str, str]]:
        ntype = node.type
        if ntype == "function_call_expression":
            name = self._last_segment(_text(node.child_by_field_name("function")))
            return (name, "") if name else None
        if ntype == "object_creation_expression":
            target = _child_of_type(node, "name", "qualified_name")
            return (self._last_segment(_text(target)), "") if target is not None else None
        name = _text(node.child_by_field_name("name"))
        if not name:
            return None
        owner = node.child_by_field_name("scope") or node.child_by_field_name("object")
        return name, _text(owner).lstrip("$")

    def type_names(self, node) -> list[str]:
        name = self._last_segment(_text(node))
        return [name] if name else []

    def base_types(self, node) -> list[str]:
        out: list[str] = []
        for clause in node.children:
            if clause.type in ("base_clause", "class_interface_clause"):
                out.extend(self._last_segment(t) for t in
                           _descendant_texts(clause, frozenset({"name", "qualified_name"})))
        return out

    def import_names(self, node) -> list[str]:
        target = _child_of_type(node, "qualified_name", "name")
        return [_text(target).lstrip("\\").replace("\\", ".")] if target is not None else []


# ---------------------------------------------------------------------------
# C#
# ---------------------------------------------------------------------------

@register
class CSharpExtractor(TreeSitterExtractor):
    language = "c_sharp"
    extensions = (".cs",)
    grammar_module = "tree_sitter_c_sharp"

    function_types = frozenset({
        "method_declaration", "constructor_declaration", "local_function_statement",
    })
    type_types = frozenset({
        "class_declaration", "interface_declaration", "struct_declaration",
        "enum_declaration", "record_declaration",
    })
    module_types = frozenset({"namespace_declaration", "file_scoped_namespace_declaration"})
    call_types = frozenset({"invocation_expression", "object_creation_expression"})
    import_types = frozenset({"using_directive"})

    def is_public(self, node, name: str, signature: str) -> bool:
        modifiers = {_text(c) for c in node.children if c.type == "modifier"}
        if "public" in modifiers:
            return True
        holder = node.parent.parent if node.parent is not None else None
        return holder is not None and holder.type == "interface_declaration"

    def attributes_text(self, node) -> str:
        return " ".join(_text(c) for c in node.children if c.type == "attribute_list")

    def callee(self, node) -> Optional[tuple[str, str]]:
        if node.type == "object_creation_expression":
            type_node = node.child_by_field_name("type")
            name = _GENERIC_RE.sub("", _text(type_node)).rsplit(".", 1)[-1]
            return (name, "") if name else None
        return split_callee(node.child_by_field_name("function"))

    def base_types(self, node) -> list[str]:
        bases = _child_of_type(node, "base_list")
        return [_GENERIC_RE.sub("", t) for t in
                _descendant_texts(bases, frozenset({"identifier", "generic_name"}))]

    def import_names(self, node) -> list[str]:
        target = _child_of_type(node, "qualified_name", "identifier")
        return [_text(target)] if target is not None else []
