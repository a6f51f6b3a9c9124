# chrootbuild/modules/fetcher.py
"""
fetcher.py - mirror resolver and package downloader

Features:
- List a mirror directory (HTML index) and pick the newest entry matching a
  name prefix/suffix (natural sort)
- Resolver errors are recoverable: the next mirror is tried
- Network errors are fatal and never retried
- Downloads written to a temporary name and renamed; already present files
  are reused (survives partially completed runs)
"""

from __future__ import annotations

import os
import re
import posixpath
from dataclasses import dataclass, field
from html.parser import HTMLParser
from typing import ClassVar, List, Optional, Tuple, Union
from urllib.error import URLError
from urllib.parse import unquote, urljoin, urlparse
from urllib.request import urlopen

from chrootbuild.modules.errors import FetchError, ResolverError
from chrootbuild.modules.logging import get_logger
from chrootbuild.modules.plan import RunContext, Step, register_step

logger = get_logger("fetcher")

_CHUNK = 64 * 1024


# -----------------------------------------------------------------------
# Mirror listing
# -----------------------------------------------------------------------
class _AnchorParser(HTMLParser):
    def __init__(self):
        super().__init__()
        self.hrefs: List[str] = []

    def handle_starttag(self, tag, attrs):
        if tag != "a":
            return
        for name, value in attrs:
            if name == "href" and value:
                self.hrefs.append(value)


def _natural_key(name: str) -> Tuple[Tuple[int, Union[int, str]], ...]:
    parts = re.split(r"(\d+)", name)
    return tuple((0, int(p)) if p.isdigit() else (1, p) for p in parts if p)


def parse_listing(html: str) -> List[str]:
    """File names linked from a directory index page."""
    parser = _AnchorParser()
    parser.feed(html)
    names = []
    for href in parser.hrefs:
        path = urlparse(href).path
        if not path or path.endswith("/"):
            continue
        names.append(unquote(posixpath.basename(path)))
    return names


def list_mirror(url: str, timeout: int = 30) -> List[str]:
    try:
        with urlopen(url, timeout=timeout) as resp:
            charset = resp.headers.get_content_charset() or "utf-8"
            html = resp.read().decode(charset, errors="replace")
    except (URLError, OSError) as e:
        raise FetchError(f"cannot list mirror {url}: {e}") from e
    return parse_listing(html)


def select_entry(names: List[str], prefix: str, suffix: str = "") -> Optional[str]:
    candidates = [n for n in names if n.startswith(prefix) and n.endswith(suffix)]
    if not candidates:
        return None
    return max(candidates, key=_natural_key)


def resolve_mirror_entry(url: str, prefix: str, suffix: str = "", timeout: int = 30) -> str:
    """Best matching file name in the mirror directory at url."""
    name = select_entry(list_mirror(url, timeout=timeout), prefix, suffix)
    if name is None:
        raise ResolverError(f"no entry starting with '{prefix}' and ending with '{suffix}' in {url}")
    logger.debug("resolved %s%s* -> %s", url, prefix, name)
    return name


# -----------------------------------------------------------------------
# Download
# -----------------------------------------------------------------------
def download(url: str, dest: str, timeout: int = 30) -> str:
    os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)
    tmp = f"{dest}.{os.getpid()}.part"
    try:
        with urlopen(url, timeout=timeout) as resp, open(tmp, "wb") as f:
            while True:
                chunk = resp.read(_CHUNK)
                if not chunk:
                    break
                f.write(chunk)
        os.replace(tmp, dest)
    except (URLError, OSError) as e:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise FetchError(f"download of {url} failed: {e}") from e
    logger.info("downloaded %s (%d bytes)", dest, os.path.getsize(dest))
    return dest


@register_step
@dataclass
class FetchMirrorPackage(Step):
    """Resolve a package on the first mirror that lists it and download it once."""
    op: ClassVar[str] = "fetch_mirror_package"
    key: str
    prefix: str
    dest_dir: str
    mirrors: List[str] = field(default_factory=list)
    suffix: str = ".rpm"
    timeout: int = 30

    def run(self, ctx: RunContext) -> None:
        last: Optional[ResolverError] = None
        for mirror in self.mirrors:
            try:
                name = resolve_mirror_entry(mirror, self.prefix, self.suffix, timeout=self.timeout)
            except ResolverError as e:
                logger.warning("%s", e)
                last = e
                continue
            dest = os.path.join(self.dest_dir, name)
            if os.path.isfile(dest):
                logger.info("using already downloaded %s", dest)
            else:
                download(urljoin(mirror, name), dest, timeout=self.timeout)
            ctx.fetched[self.key] = dest
            return
        raise last or ResolverError(f"no mirrors configured for {self.prefix}")

    def describe(self) -> str:
        return f"fetch {self.prefix}*{self.suffix} from {', '.join(self.mirrors)}"
