"""Project naming and page metadata for generated apps."""

import json
import logging
import re
from datetime import datetime, timezone
from urllib.parse import quote

from app.config import settings
from shipwright_kit.fileset import FileSet

logger = logging.getLogger(__name__)

LAYOUT_FILES = ("src/app/layout.tsx", "app/layout.tsx")

_METADATA_RE = re.compile(r"export\s+const\s+metadata\s*:\s*Metadata\s*=\s*\{[\s\S]+?\n\}")
_IMPORT_RE = re.compile(r"^import[^;]+;", re.MULTILINE)

# Names that already say what the thing is; no " App" suffix needed.
_KIND_WORDS = (
    "app", "application", "miniapp", "mini app", "dashboard", "platform",
    "tool", "game", "player", "gallery", "blog", "store", "shop",
)
_MAX_NAME_WORDS = 6


def generate_project_name(request: str, *, now: datetime | None = None) -> str:
    """Derive a display name from the user's request.

    >>> generate_project_name("a pixel art gallery")
    'A Pixel Art Gallery'
    >>> generate_project_name("quiz")
    'Quiz App'
    """
    lowered = request.lower()
    if "bootstrap" in lowered or "template" in lowered:
        stamp = now or datetime.now(timezone.utc)
        return f"Miniapp {stamp.strftime('%b')} {stamp.day}"

    words = re.sub(r"[^\w\s]", " ", lowered).split()[:_MAX_NAME_WORDS]
    if not words:
        return "Untitled App"
    name = " ".join(w.capitalize() for w in words)
    joined = " ".join(words)
    if not any(re.search(rf"\b{re.escape(k)}\b", joined) for k in _KIND_WORDS):
        name += " App"
    return name


def _metadata_block(name: str, description: str, url: str) -> str:
    og_image = f"{settings.APP_URL.rstrip('/')}/api/og-image?name={quote(name)}"
    title = f"{name} | Farcaster Miniapp"
    return (
        "export const metadata: Metadata = {\n"
        f"  metadataBase: new URL({json.dumps(url)}),\n"
        f"  title: {json.dumps(title)},\n"
        f"  description: {json.dumps(description)},\n"
        f"  keywords: [{json.dumps(name)}, \"Farcaster\", \"miniapp\"],\n"
        f"  authors: [{{ name: {json.dumps(name)} }}],\n"
        f"  alternates: {{ canonical: {json.dumps(url)} }},\n"
        "  openGraph: {\n"
        f"    title: {json.dumps(title)},\n"
        f"    siteName: {json.dumps(name)},\n"
        f"    url: {json.dumps(url)},\n"
        "    type: \"website\",\n"
        f"    description: {json.dumps(description)},\n"
        f"    images: [{{ url: {json.dumps(og_image)}, width: 1200, height: 630 }}],\n"
        "  },\n"
        "  twitter: {\n"
        "    card: \"summary_large_image\",\n"
        f"    title: {json.dumps(title)},\n"
        f"    description: {json.dumps(description)},\n"
        f"    images: [{json.dumps(og_image)}],\n"
        "  },\n"
        "}"
    )


def inject_metadata(layout: str, name: str, description: str, url: str) -> str:
    """Replace (or add) the ``metadata`` export in a Next.js layout file."""
    block = _metadata_block(name, description, url)
    if _METADATA_RE.search(layout):
        return _METADATA_RE.sub(lambda _m: block, layout, count=1)

    logger.warning("No metadata export in layout, adding one")
    imports = list(_IMPORT_RE.finditer(layout))
    insert_at = imports[-1].end() if imports else 0
    return f"{layout[:insert_at]}\n\n{block};\n{layout[insert_at:]}"


def apply_project_metadata(
    files: FileSet,
    project_id: str,
    name: str,
    description: str = "",
) -> FileSet:
    """Return a copy of *files* with metadata injected into the layout file."""
    url = f"https://{project_id}.{settings.CUSTOM_DOMAIN_BASE}"
    description = description or f"A Farcaster mini app: {name}"
    updated = dict(files)
    for path in LAYOUT_FILES:
        if path in updated:
            updated[path] = inject_metadata(updated[path], name, description, url)
            logger.info("Injected metadata for %r into %s", name, path)
            break
    return updated
