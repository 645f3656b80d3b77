"""Image URL validation and replacement.

Generated UIs often hard-code Unsplash photo URLs whose IDs the model
invented; those 404 in the deployed preview.  This module finds image
URLs in source text, checks them with bounded-concurrency ``HEAD``
requests, and swaps broken ones for Picsum placeholders of the same size.

Replacement URLs are deterministic: the seed comes from the Unsplash photo
ID (or a hash of the URL), so re-running the fix on the same input yields
the same output.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re

import httpx
from pydantic import BaseModel, ConfigDict, Field

from forge_codec.contracts import FileOutput
from phaseforge.config import settings

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; PhaseForge-ImageValidator/1.0)"
DEFAULT_WIDTH = 800
DEFAULT_HEIGHT = 600

_IMAGE_URL_RE = re.compile(
    r"""https?://[^\s"'<>)`]+\.(?:jpg|jpeg|png|gif|webp|svg)(?:[^\s"'<>)`]*)?""",
    re.IGNORECASE,
)
_UNSPLASH_URL_RE = re.compile(r"""https?://images\.unsplash\.com/[^\s"'<>)`]+""", re.IGNORECASE)
_WIDTH_RE = re.compile(r"[?&]w=(\d+)")
_HEIGHT_RE = re.compile(r"[?&]h=(\d+)")
_PHOTO_ID_RE = re.compile(r"photo-([^?]+)")

# File types that never carry <img> sources worth rewriting
_SKIP_SUFFIXES = (".json", ".md", ".css")


class ImageValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    is_valid: bool
    status_code: int | None = None
    error: str | None = None
    alternative_url: str | None = None


class BrokenImageFix(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_url: str
    replacement_url: str
    reason: str


class ImageFixResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    files_fixed: int = 0
    urls_replaced: int = 0
    fixes: list[BrokenImageFix] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def extract_dimensions(url: str) -> tuple[int, int]:
    """Return ``(width, height)`` from ``w=``/``h=`` query params, defaulting to 800x600."""
    w = _WIDTH_RE.search(url)
    h = _HEIGHT_RE.search(url)
    return (
        int(w.group(1)) if w else DEFAULT_WIDTH,
        int(h.group(1)) if h else DEFAULT_HEIGHT,
    )


def image_seed(url: str) -> str:
    """First 10 chars of the Unsplash photo ID, else a stable hash of *url*."""
    m = _PHOTO_ID_RE.search(url)
    if m:
        return m.group(1)[:10]
    return hashlib.sha1(url.encode("utf-8")).hexdigest()[:10]


def picsum_url(width: int = DEFAULT_WIDTH, height: int = DEFAULT_HEIGHT, seed: str | None = None) -> str:
    base = f"https://picsum.photos/{width}/{height}"
    return f"{base}?random={seed}" if seed else base


def alternative_url(url: str) -> str:
    width, height = extract_dimensions(url)
    return picsum_url(width, height, image_seed(url))


def extract_image_urls(content: str) -> list[str]:
    """All image URLs in *content*, de-duplicated in first-seen order."""
    return list(dict.fromkeys(_IMAGE_URL_RE.findall(content)))


def extract_unsplash_urls(content: str) -> list[str]:
    return list(dict.fromkeys(_UNSPLASH_URL_RE.findall(content)))


def apply_image_url_fixes(content: str, fixes: list[BrokenImageFix]) -> str:
    # Longest first so a URL never clobbers a longer one it prefixes
    for fix in sorted(fixes, key=lambda f: len(f.original_url), reverse=True):
        content = content.replace(fix.original_url, fix.replacement_url)
    return content


# ---------------------------------------------------------------------------
# Network validation
# ---------------------------------------------------------------------------


async def validate_image_url(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float | None = None,
) -> ImageValidationResult:
    """``HEAD`` *url*; a non-2xx status, timeout, or transport error marks it invalid."""
    timeout = settings.IMAGE_VALIDATION_TIMEOUT_S if timeout is None else timeout
    owns_client = client is None
    client = client or httpx.AsyncClient(follow_redirects=True)
    try:
        response = await client.head(url, headers={"User-Agent": USER_AGENT}, timeout=timeout)
        ok = response.is_success
        return ImageValidationResult(
            url=url,
            is_valid=ok,
            status_code=response.status_code,
            alternative_url=None if ok else alternative_url(url),
        )
    except httpx.HTTPError as exc:
        logger.warning("Image URL validation failed for %s: %s", url, type(exc).__name__)
        return ImageValidationResult(
            url=url,
            is_valid=False,
            error=str(exc) or type(exc).__name__,
            alternative_url=alternative_url(url),
        )
    finally:
        if owns_client:
            await client.aclose()


async def validate_image_urls(
    urls: list[str],
    *,
    client: httpx.AsyncClient | None = None,
    batch_size: int | None = None,
    timeout: float | None = None,
) -> dict[str, ImageValidationResult]:
    """Validate *urls* in sequential groups of *batch_size* concurrent requests."""
    batch_size = batch_size or settings.IMAGE_VALIDATION_BATCH_SIZE
    results: dict[str, ImageValidationResult] = {}
    unique = list(dict.fromkeys(urls))
    if not unique:
        return results

    owns_client = client is None
    client = client or httpx.AsyncClient(follow_redirects=True)
    try:
        for i in range(0, len(unique), batch_size):
            batch = unique[i:i + batch_size]
            batch_results = await asyncio.gather(
                *(validate_image_url(u, client=client, timeout=timeout) for u in batch)
            )
            for r in batch_results:
                results[r.url] = r
    finally:
        if owns_client:
            await client.aclose()
    return results


async def generate_image_url_fixes(
    content: str, *, client: httpx.AsyncClient | None = None,
) -> list[BrokenImageFix]:
    """Validate every Unsplash URL in *content*; return replacements for the broken ones."""
    unsplash = extract_unsplash_urls(content)
    if not unsplash:
        return []
    logger.info("Validating %d Unsplash URLs", len(unsplash))
    results = await validate_image_urls(unsplash, client=client)
    fixes: list[BrokenImageFix] = []
    for url, r in results.items():
        if not r.is_valid and r.alternative_url:
            fixes.append(BrokenImageFix(
                original_url=url,
                replacement_url=r.alternative_url,
                reason=f"URL returned {r.status_code or 'error'} - replaced with reliable alternative",
            ))
    return fixes


async def auto_fix_image_urls(
    files: list[FileOutput], *, client: httpx.AsyncClient | None = None,
) -> tuple[list[FileOutput], ImageFixResult]:
    """Replace broken Unsplash URLs across *files*.

    ``.json``, ``.md`` and ``.css`` files are passed through untouched.
    Returns the (possibly) rewritten files in input order plus a summary.
    """
    out: list[FileOutput] = []
    all_fixes: list[BrokenImageFix] = []
    files_fixed = 0

    for f in files:
        if f.file_path.endswith(_SKIP_SUFFIXES) or not extract_unsplash_urls(f.file_contents):
            out.append(f)
            continue
        fixes = await generate_image_url_fixes(f.file_contents, client=client)
        if not fixes:
            out.append(f)
            continue
        logger.info("Fixing %d broken image URLs in %s", len(fixes), f.file_path)
        out.append(f.model_copy(update={"file_contents": apply_image_url_fixes(f.file_contents, fixes)}))
        files_fixed += 1
        all_fixes.extend(fixes)

    if files_fixed:
        logger.info(
            "Image URL auto-fix: %d files fixed, %d URLs replaced", files_fixed, len(all_fixes),
        )
    return out, ImageFixResult(files_fixed=files_fixed, urls_replaced=len(all_fixes), fixes=all_fixes)


def get_image_url_guidance() -> str:
    """Prompt section steering the model towards placeholder services that stay up."""
    return _IMAGE_URL_GUIDANCE


_IMAGE_URL_GUIDANCE = """\
<IMAGE_URL_BEST_PRACTICES>
Use only image sources that reliably resolve.

Preferred: Picsum Photos
  Pattern: https://picsum.photos/{width}/{height}?random={seed}
  Hero: https://picsum.photos/1920/1080?random=hero
  Card: https://picsum.photos/600/400?random=card1
  Use a distinct seed per image and always give dimensions.

Fallback: https://via.placeholder.com/{width}x{height}?text={text}

Avoid hard-coded Unsplash photo URLs (https://images.unsplash.com/photo-...):
invented or deleted photo IDs return 404.  Always provide alt text.
</IMAGE_URL_BEST_PRACTICES>"""


__all__ = [
    "BrokenImageFix",
    "ImageFixResult",
    "ImageValidationResult",
    "alternative_url",
    "apply_image_url_fixes",
    "auto_fix_image_urls",
    "extract_dimensions",
    "extract_image_urls",
    "extract_unsplash_urls",
    "generate_image_url_fixes",
    "get_image_url_guidance",
    "image_seed",
    "picsum_url",
    "validate_image_url",
    "validate_image_urls",
]
