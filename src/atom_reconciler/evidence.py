"""Regex extractors for non-test evidence in source and documentation files."""

from __future__ import annotations

import re

from .models import EvidenceItem, EvidenceType

_SURROUNDING_LINES = 10

_EXPORT = re.compile(r"export\s+(default\s+)?(async\s+)?(function|class|const|interface)\s+(\w+)")
_REACT_FUNCTION = re.compile(r"export\s+(?:default\s+)?function\s+([A-Z]\w+)")
_REACT_CONST = re.compile(r"export\s+(?:default\s+)?const\s+([A-Z]\w+)\s*[=:]")
_HAS_JSX = re.compile(r"<[A-Z]|return\s*\(?\s*<")
_HAS_FORM = re.compile(r"(<form|<input|<textarea|<select|useForm)", re.IGNORECASE)
_HAS_NAVIGATION = re.compile(r"(<Link|useRouter|useNavigate|usePathname)", re.IGNORECASE)
_NEST_CONTROLLER = re.compile(r"@Controller\(\s*['\"]([^'\"]*)['\"]\s*\)")
_NEST_ROUTE = re.compile(r"@(Get|Post|Put|Delete|Patch)\(\s*['\"]?([^'\")\s]*)['\"]?\s*\)")
_METHOD_NAME = re.compile(r"(?:async\s+)?(\w+)\s*\(")
_EXPRESS_ROUTE = re.compile(r"\.(get|post|put|delete|patch)\(\s*['\"]([^'\"]+)['\"]")
_DOC_SECTION = re.compile(r"^(#{1,2}\s+.+)$", re.MULTILINE)
_DOC_BOILERPLATE = re.compile(
    r"^(table of contents|license|changelog|contributing|installation|getting started)", re.IGNORECASE
)
_MARKDOWN_LINK = re.compile(r"\[.*?\]\(.*?\)")


def _line_number(content: str, offset: int) -> int:
    return content.count("\n", 0, offset) + 1


def _surrounding(content: str, offset: int, lines: int = _SURROUNDING_LINES) -> str:
    all_lines = content.splitlines()
    start = _line_number(content, offset) - 1
    return "\n".join(all_lines[start : start + lines])


def extract_source_exports(file_path: str, content: str) -> list[EvidenceItem]:
    items: list[EvidenceItem] = []
    for match in _EXPORT.finditer(content):
        items.append(
            EvidenceItem(
                type=EvidenceType.SOURCE_EXPORT,
                file_path=file_path,
                name=match.group(4),
                code=_surrounding(content, match.start()),
                line_number=_line_number(content, match.start()),
                metadata={
                    "export_kind": match.group(3),
                    "is_default": bool(match.group(1)),
                    "is_async": bool(match.group(2)),
                },
            )
        )
    return items


def extract_ui_components(file_path: str, content: str) -> list[EvidenceItem]:
    if not file_path.endswith((".tsx", ".jsx")) or not _HAS_JSX.search(content):
        return []
    metadata = {
        "framework": "react",
        "has_form": bool(_HAS_FORM.search(content)),
        "has_navigation": bool(_HAS_NAVIGATION.search(content)),
    }
    seen: set[str] = set()
    items: list[EvidenceItem] = []
    for pattern in (_REACT_FUNCTION, _REACT_CONST):
        for match in pattern.finditer(content):
            name = match.group(1)
            if name in seen:
                continue
            seen.add(name)
            items.append(
                EvidenceItem(
                    type=EvidenceType.UI_COMPONENT,
                    file_path=file_path,
                    name=name,
                    code=_surrounding(content, match.start(), 20),
                    line_number=_line_number(content, match.start()),
                    metadata=dict(metadata),
                )
            )
    return items


def extract_api_endpoints(file_path: str, content: str) -> list[EvidenceItem]:
    items: list[EvidenceItem] = []
    controller = _NEST_CONTROLLER.search(content)
    prefix = controller.group(1) if controller else ""
    for match in _NEST_ROUTE.finditer(content):
        route = re.sub(r"/+", "/", f"/{prefix}/{match.group(2) or ''}")
        if len(route) > 1:
            route = route.rstrip("/")
        method_match = _METHOD_NAME.search(content, match.end())
        items.append(
            EvidenceItem(
                type=EvidenceType.API_ENDPOINT,
                file_path=file_path,
                name=f"{match.group(1).upper()} {route}",
                code=_surrounding(content, match.start(), 15),
                line_number=_line_number(content, match.start()),
                metadata={
                    "framework": "nestjs",
                    "method": match.group(1).upper(),
                    "route": route,
                    "handler": method_match.group(1) if method_match else None,
                },
            )
        )
    if items:
        return items
    for match in _EXPRESS_ROUTE.finditer(content):
        method = match.group(1).upper()
        items.append(
            EvidenceItem(
                type=EvidenceType.API_ENDPOINT,
                file_path=file_path,
                name=f"{method} {match.group(2)}",
                code=_surrounding(content, match.start(), 15),
                line_number=_line_number(content, match.start()),
                metadata={"framework": "express", "method": method, "route": match.group(2)},
            )
        )
    return items


def extract_documentation_evidence(file_path: str, content: str) -> list[EvidenceItem]:
    """One evidence item per level-1/level-2 section, skipping boilerplate sections."""
    parts = _DOC_SECTION.split(content)
    items: list[EvidenceItem] = []
    # split() with one group alternates [preamble, heading, body, heading, body, ...]
    for heading, body in zip(parts[1::2], parts[2::2]):
        title = heading.lstrip("#").strip()
        text = _MARKDOWN_LINK.sub("", body).strip()
        if _DOC_BOILERPLATE.match(title) or len(text) < 50:
            continue
        items.append(
            EvidenceItem(
                type=EvidenceType.DOCUMENTATION,
                file_path=file_path,
                name=title,
                code=text[:1_000],
                line_number=_line_number(content, content.find(heading)),
                metadata={"heading_level": len(heading) - len(heading.lstrip("#"))},
            )
        )
    return items


def extract_evidence(file_path: str, content: str) -> list[EvidenceItem]:
    if file_path.endswith(".md"):
        return extract_documentation_evidence(file_path, content)
    items = extract_api_endpoints(file_path, content)
    items.extend(extract_ui_components(file_path, content))
    component_names = {item.name for item in items if item.type == EvidenceType.UI_COMPONENT}
    items.extend(item for item in extract_source_exports(file_path, content) if item.name not in component_names)
    return items
