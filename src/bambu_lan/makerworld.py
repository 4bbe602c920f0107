"""MakerWorld model lookup and 3MF download.

MakerWorld sits behind Cloudflare, so anonymous requests are often
challenged.  Browser session cookies (``MAKERWORLD_COOKIES``) make the
design-service API usable; without them, :func:`download_model` tries the
model page's embedded ``__NEXT_DATA__`` and raises
:class:`MakerWorldError` with ``blocked=True`` when the challenge page is
returned instead.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests

from bambu_lan.errors import MakerWorldError

logger = logging.getLogger(__name__)

MAKERWORLD_DOMAINS = ("makerworld.com", "makerworld.com.cn")
_API_BASE = "/api/v1/design-service"
_BROWSER_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:147.0) Gecko/20100101 Firefox/147.0"
)
_MODEL_PATH_RE = re.compile(r"/(en|zh)/models/(\d+)(?:-([^/]*))?")
_PROFILE_RE = re.compile(r"profileId-(\d+)")
_NEXT_DATA_RE = re.compile(r'<script\s+id="__NEXT_DATA__"[^>]*>(.*?)</script>', re.DOTALL)
_CHALLENGE_MARKERS = ("Verify you are human", "cf-turnstile", "challenges.cloudflare.com")

_PAGE_TIMEOUT = 15.0
_DOWNLOAD_TIMEOUT = 60.0
_CHUNK_SIZE = 64 * 1024


@dataclass
class ModelRef:
    """A parsed MakerWorld model URL."""

    model_id: str
    domain: str
    lang: str
    url: str
    profile_id: Optional[str] = None
    slug: Optional[str] = None


@dataclass
class DownloadResult:
    path: str
    size_bytes: int
    instance_id: str
    model_id: Optional[str] = None
    title: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "filename": os.path.basename(self.path),
            "size_bytes": self.size_bytes,
            "instance_id": self.instance_id,
            "model_id": self.model_id,
            "title": self.title,
            **self.extra,
        }


# ---------------------------------------------------------------------------
# URL handling
# ---------------------------------------------------------------------------


def parse_model_url(url: str) -> ModelRef:
    """Parse a MakerWorld model URL.

    Accepts forms such as ``https://makerworld.com/en/models/2344501-keyring``
    and ``https://makerworld.com/en/models/2344501#profileId-2563198``.

    Raises:
        MakerWorldError: If *url* is not a MakerWorld model page.
    """
    parsed = urlparse(url.strip())
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if host not in MAKERWORLD_DOMAINS:
        raise MakerWorldError(f"Not a MakerWorld URL: {url!r}")

    match = _MODEL_PATH_RE.search(parsed.path)
    if match is None:
        raise MakerWorldError(f"No model id in MakerWorld URL: {url!r}")
    lang, model_id, slug = match.groups()

    profile = _PROFILE_RE.search(parsed.fragment)
    return ModelRef(
        model_id=model_id,
        domain=f"https://{host}",
        lang=lang,
        url=url,
        profile_id=profile.group(1) if profile else None,
        slug=slug or None,
    )


def design_api_url(domain: str, model_id: str) -> str:
    return f"{domain}{_API_BASE}/design/{model_id}"


def download_api_url(domain: str, instance_id: str) -> str:
    return f"{domain}{_API_BASE}/instance/{instance_id}/f3mf?type=download"


def default_instance_id(design: Dict[str, Any]) -> Optional[str]:
    """Return the id of the default print profile, or the first one."""
    instances: List[Dict[str, Any]] = design.get("instances") or []
    if not instances:
        return None
    for inst in instances:
        if inst.get("isDefault") and inst.get("id") is not None:
            return str(inst["id"])
    first = instances[0].get("id")
    return str(first) if first is not None else None


def safe_filename(title: str) -> str:
    name = re.sub(r"[^a-zA-Z0-9._-]", "_", title)
    return re.sub(r"_+", "_", name).strip("_") or "model"


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def _session(cookies: Optional[str]) -> requests.Session:
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": _BROWSER_UA,
            "Accept": "text/html,application/json,*/*",
            "Accept-Language": "en-US,en;q=0.9",
        }
    )
    if cookies:
        session.headers["Cookie"] = cookies
    return session


def _is_challenge(resp: requests.Response) -> bool:
    if resp.status_code == 403:
        return True
    text = resp.text if "text" in resp.headers.get("Content-Type", "text") else ""
    return any(marker in text for marker in _CHALLENGE_MARKERS)


def _get(session: requests.Session, url: str, timeout: float, **kwargs: Any) -> requests.Response:
    try:
        resp = session.get(url, timeout=timeout, **kwargs)
    except requests.RequestException as exc:
        raise MakerWorldError(f"MakerWorld request failed: {exc}", cause=exc) from exc
    if _is_challenge(resp):
        raise MakerWorldError(
            "MakerWorld blocked the request (Cloudflare challenge). "
            "Set MAKERWORLD_COOKIES from a logged-in browser session, or download "
            "the 3MF manually and pass its path.",
            blocked=True,
        )
    if not resp.ok:
        raise MakerWorldError(f"MakerWorld HTTP {resp.status_code} for {url}")
    return resp


def get_design(
    model_id: str,
    *,
    domain: str = "https://makerworld.com",
    cookies: Optional[str] = None,
    timeout: float = _PAGE_TIMEOUT,
) -> Dict[str, Any]:
    """Fetch the design record (title, creator, print profiles) for *model_id*."""
    session = _session(cookies)
    resp = _get(session, design_api_url(domain, model_id), timeout)
    try:
        data = resp.json()
    except ValueError as exc:
        raise MakerWorldError("MakerWorld returned invalid JSON", cause=exc) from exc
    if not isinstance(data, dict):
        raise MakerWorldError("Unexpected MakerWorld design payload")
    return data


def _design_from_page(session: requests.Session, ref: ModelRef) -> Optional[Dict[str, Any]]:
    resp = _get(session, ref.url, _PAGE_TIMEOUT)
    match = _NEXT_DATA_RE.search(resp.text)
    if match is None:
        return None
    try:
        data = json.loads(match.group(1))
    except ValueError:
        logger.debug("Could not decode __NEXT_DATA__ for model %s", ref.model_id)
        return None
    design = data.get("props", {}).get("pageProps", {}).get("design")
    return design if isinstance(design, dict) else None


def _write_stream(resp: requests.Response, out_path: str) -> int:
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    size = 0
    with open(out_path, "wb") as fh:
        for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
            if chunk:
                fh.write(chunk)
                size += len(chunk)
    return size


def download_model(
    url: Optional[str] = None,
    dest_dir: Optional[str] = None,
    *,
    instance_id: Optional[str] = None,
    cookies: Optional[str] = None,
) -> DownloadResult:
    """Download a model's 3MF into *dest_dir* (default ``~/Downloads``).

    Either *url* or *instance_id* is required.  With only a URL the
    default print profile is resolved from the design API, falling back
    to the model page.

    Raises:
        MakerWorldError: On an invalid URL, a Cloudflare block, or an
            HTTP failure.
    """
    if not url and not instance_id:
        raise MakerWorldError("Provide a MakerWorld URL or instance_id")

    ref = parse_model_url(url) if url else None
    domain = ref.domain if ref else "https://makerworld.com"
    dest_dir = os.path.expanduser(dest_dir or os.path.join("~", "Downloads"))
    cookies = cookies or os.environ.get("MAKERWORLD_COOKIES") or None
    session = _session(cookies)

    title: Optional[str] = None
    if instance_id is None:
        assert ref is not None
        try:
            design = get_design(ref.model_id, domain=domain, cookies=cookies)
        except MakerWorldError as exc:
            if exc.blocked:
                raise
            logger.info("Design API failed for %s (%s); trying model page", ref.model_id, exc)
            design = _design_from_page(session, ref)
        if not design:
            raise MakerWorldError(f"Could not resolve a print profile for model {ref.model_id}")
        instance_id = default_instance_id(design)
        if instance_id is None:
            raise MakerWorldError(f"Model {ref.model_id} has no downloadable print profiles")
        title = design.get("title")

    filename = safe_filename(title or (ref.model_id if ref else f"makerworld_{instance_id}"))
    out_path = os.path.join(dest_dir, f"{filename}.3mf")
    resp = _get(
        session,
        download_api_url(domain, instance_id),
        _DOWNLOAD_TIMEOUT,
        stream=True,
        headers={"Accept": "*/*"},
    )
    size = _write_stream(resp, out_path)
    logger.info("Downloaded MakerWorld instance %s to %s (%d bytes)", instance_id, out_path, size)
    return DownloadResult(
        path=out_path,
        size_bytes=size,
        instance_id=instance_id,
        model_id=ref.model_id if ref else None,
        title=title,
    )
