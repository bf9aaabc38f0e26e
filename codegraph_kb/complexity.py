"""
Pluggable complexity scorers.

A scorer is any callable ``(node, language) -> int | None`` taking the
tree-sitter node of a function definition.  The default counts decision
points (a cyclomatic-complexity approximation); callers can register their
own via :func:`set_default_scorer` or pass one to an extractor.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

ComplexityScorer = Callable[[Any, str], Optional[int]]

# Node types that introduce a branch, across the supported grammars.
BRANCH_NODE_TYPES: frozenset[str] = frozenset({
    "if_statement", "if_expression", "elif_clause", "else_if_clause",
    "for_statement", "for_in_statement", "for_expression", "enhanced_for_statement",
    "foreach_statement", "range_clause",
    "while_statement", "while_expression", "do_statement", "loop_expression",
    "case_clause", "switch_case", "switch_section", "expression_case",
    "type_case", "match_arm", "when", "case_statement",
    "catch_clause", "except_clause", "rescue",
    "conditional_expression", "ternary_expression",
    "if", "unless", "while", "until", "for",
    "if_modifier", "unless_modifier", "while_modifier",
    "conditional",
})

# Short-circuit operators appear as anonymous child tokens.
BOOLEAN_OPERATOR_TOKENS: frozenset[str] = frozenset({"&&", "||", "and", "or"})


def branch_count_complexity(node: Any, language: str = "") -> Optional[int]:
    """Return 1 + the number of decision points below *node*."""
    if node is None:
        return None
    count = 1
    stack = list(node.children)
    while stack:
        current = stack.pop()
        ntype = current.type
        if ntype in BRANCH_NODE_TYPES and current.is_named:
            count += 1
        elif ntype in BOOLEAN_OPERATOR_TOKENS and not current.is_named:
            count += 1
        stack.extend(current.children)
    return count


_default_scorer: ComplexityScorer = branch_count_complexity


def get_default_scorer() -> ComplexityScorer:
    return _default_scorer


def set_default_scorer(scorer: ComplexityScorer) -> None:
    """Replace the scorer used by extractors that were not given one."""
    global _default_scorer
    _default_scorer = scorer
