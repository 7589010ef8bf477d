#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
pdfbatch.py — CLI tool to render web pages to PDF files with headless Chromium.

Pages come either from an explicit comma-separated list (--urls) or from the
.json links found on an index page (--index). Every URL gets its own tab in one
shared browser, all tabs run concurrently, and a failing URL never stops the
rest of the batch.

- Print-to-PDF with background graphics, landscape/portrait and scale 0.1–2.0.
- Filenames from the URL's .json basename (optionally prefixed), else MD5 of the URL.
- Optional query string appended to every discovered link.
- If Chromium's PDF engine fails, falls back to screenshot→paginated Letter PDF.

Setup once:
    pip install -e .
    python -m playwright install chromium
Run:
    pdfbatch --urls https://example.com/a.json,https://example.com/b.json -o pdfs
    pdfbatch --index https://example.com/reports/ --query theme=print --prefix q3
"""

import argparse
import asyncio
import hashlib
import logging
import math
import sys
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Optional, Literal, List, Dict, Callable, Tuple
from urllib.parse import urlparse, urlsplit, urlunsplit

# Playwright
from playwright.async_api import async_playwright, Error as PlaywrightError

# Imaging/PDF for the screenshot fallback
from PIL import Image
from reportlab.pdfgen import canvas as pdfcanvas
from reportlab.lib.pagesizes import letter, landscape as landscape_pagesize
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader

logger = logging.getLogger("pdfbatch")

# ---------- Constants & Utilities ----------

CSS_PX_PER_INCH = 96.0
PDF_POINTS_PER_INCH = 72.0

MIN_SCALE = 0.1
MAX_SCALE = 2.0
DEFAULT_DELAY_MS = 2000
DEFAULT_TIMEOUT_MS = 45000

LogCallback = Callable[[str], None]


class PdfBatchError(Exception):
    """Base class for all pdfbatch errors."""


class IndexPageError(PdfBatchError):
    """The index page could not be loaded or its links could not be read."""


class RenderError(PdfBatchError):
    """Chromium failed to load or print a page."""


class OutputError(PdfBatchError):
    """A rendered PDF could not be written to disk."""


def csspx_to_pdfpt(px: float) -> float:
    return px * (PDF_POINTS_PER_INCH / CSS_PX_PER_INCH)


def clamp_scale(scale: float, logcb: LogCallback = print) -> float:
    if math.isnan(scale):
        logcb(f"[WARN] Scale {scale} is not a number; using 1.0")
        return 1.0
    if scale < MIN_SCALE or scale > MAX_SCALE:
        clamped = min(MAX_SCALE, max(MIN_SCALE, scale))
        logcb(f"[WARN] Scale {scale} outside [{MIN_SCALE}, {MAX_SCALE}]; using {clamped}")
        return clamped
    return scale


def parse_url_list(raw: str) -> List[str]:
    """
    Split a comma-separated URL list. Blanks are dropped and repeats keep
    their first position.
    """
    urls: List[str] = []
    for part in (raw or "").split(","):
        u = part.strip()
        if u and u not in urls:
            urls.append(u)
    return urls


def append_query(url: str, query: str) -> str:
    query = (query or "").strip().lstrip("?")
    if not query:
        return url
    parts = urlsplit(url)
    merged = f"{parts.query}&{query}" if parts.query else query
    return urlunsplit(parts._replace(query=merged))


def url_md5(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()


def url_to_filename(url: str, prefix: str = "") -> str:
    """
    Build <prefix>-<name>.pdf from a URL whose last path segment is <name>.json.
    Query/fragment are ignored. Anything else becomes <md5 of url>.pdf.
    """
    last = urlparse(url).path.rsplit("/", 1)[-1]
    if last.endswith(".json") and len(last) > len(".json"):
        base = last[: -len(".json")]
        if prefix:
            base = f"{prefix}-{base}"
        return base + ".pdf"
    return url_md5(url) + ".pdf"


def assign_filenames(urls: List[str], output_dir: Path, prefix: str = "") -> Dict[str, Path]:
    """
    Map each distinct URL to its output path. Two URLs sharing a .json basename
    get disambiguated by a short hash so no PDF overwrites another.
    """
    out: Dict[str, Path] = {}
    taken = set()
    for url in urls:
        if url in out:
            continue
        name = url_to_filename(url, prefix)
        if name in taken:
            name = f"{name[:-len('.pdf')]}-{url_md5(url)[:8]}.pdf"
        if name in taken:
            name = url_md5(url) + ".pdf"
        taken.add(name)
        out[url] = output_dir / name
    return out

# ---------- Options ----------

@dataclass
class RenderOptions:
    output_dir: Path = Path("pdfs")
    scale: float = 1.0
    landscape: bool = True
    prefix: str = ""
    query: str = ""
    delay_ms: int = DEFAULT_DELAY_MS
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    concurrency: int = 0  # 0 => one task per URL, all at once
    no_sandbox: bool = False
    fallback: Literal["screenshot", "none"] = "screenshot"


@dataclass
class BatchResult:
    saved: List[Path] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

# ---------- Index page ----------

LINKS_JS = """
() => Array.from(document.querySelectorAll('a'))
    .map(a => a.href)
    .filter(href => typeof href === 'string' && href.endsWith('.json'))
"""


async def fetch_index_links(context, index_url: str, opts: RenderOptions,
                            logcb: LogCallback = print) -> List[str]:
    """
    Open the index page in its own tab, give client-side rendering the fixed
    delay, and collect every anchor href ending in .json.
    """
    logcb(f"[INDEX] Loading page: {index_url}")
    page = await context.new_page()
    try:
        await page.goto(index_url, timeout=opts.timeout_ms)
        if opts.delay_ms > 0:
            await page.wait_for_timeout(opts.delay_ms)
        found = await page.evaluate(LINKS_JS)
    except PlaywrightError as e:
        raise IndexPageError(f"failed to extract links from {index_url}: {e}") from e
    finally:
        await page.close()

    links: List[str] = []
    for href in found or []:
        link = append_query(href, opts.query)
        if link not in links:
            links.append(link)

    logcb(f"[INDEX] Found {len(links)} JSON URLs")
    for link in links:
        logcb(f"[INDEX]   {link}")
    return links

# ---------- PDF builders for the screenshot fallback ----------

def page_slices(width_px: int, height_px: int, pagesize: Tuple[float, float],
                margin_in: float = 0.5) -> List[Tuple[int, int]]:
    """
    Vertical pixel ranges of a full-page screenshot, one per output page, when
    the image is scaled to the page's content width.
    """
    page_w_pt, page_h_pt = pagesize
    margin_pt = margin_in * inch
    content_w_pt = page_w_pt - 2 * margin_pt
    content_h_pt = page_h_pt - 2 * margin_pt

    scale = content_w_pt / csspx_to_pdfpt(width_px)
    native_pt_per_page = content_h_pt / scale
    native_px_per_page = int(native_pt_per_page * (CSS_PX_PER_INCH / PDF_POINTS_PER_INCH))
    native_px_per_page = max(1, native_px_per_page)

    slices = []
    y_top_px = 0
    while y_top_px < height_px:
        y_bottom_px = min(height_px, y_top_px + native_px_per_page)
        slices.append((y_top_px, y_bottom_px))
        y_top_px = y_bottom_px
    return slices


def screenshot_to_paginated_pdf(png_bytes: bytes, landscape: bool = True,
                                margin_in: float = 0.5) -> bytes:
    """
    Paginate a tall screenshot onto Letter pages (landscape or portrait) with
    normal margins, top-down. Returns the PDF bytes.
    """
    img = Image.open(BytesIO(png_bytes)).convert("RGB")
    width_px, height_px = img.size

    pagesize = landscape_pagesize(letter) if landscape else letter
    page_w_pt, page_h_pt = pagesize
    margin_pt = margin_in * inch
    content_w_pt = page_w_pt - 2 * margin_pt
    scale = content_w_pt / csspx_to_pdfpt(width_px)

    buf = BytesIO()
    c = pdfcanvas.Canvas(buf, pagesize=pagesize)
    for y_top_px, y_bottom_px in page_slices(width_px, height_px, pagesize, margin_in):
        tile = img.crop((0, y_top_px, width_px, y_bottom_px))
        tile_h_pt = csspx_to_pdfpt(tile.size[1]) * scale
        y_pt = page_h_pt - margin_pt - tile_h_pt
        c.drawImage(ImageReader(tile), margin_pt, y_pt, width=content_w_pt, height=tile_h_pt, mask='auto')
        c.showPage()
    c.save()
    return buf.getvalue()

# ---------- Core async capture ----------

async def print_page(page, opts: RenderOptions, logcb: LogCallback = print) -> bytes:
    logcb("[CAPTURE] Print mode via Chromium PDF engine")
    try:
        return await page.pdf(
            print_background=True,
            landscape=opts.landscape,
            scale=opts.scale,
        )
    except PlaywrightError as e:
        if opts.fallback != "screenshot":
            raise RenderError(f"failed to generate PDF: {e}") from e
        logcb(f"[PRINT][WARN] page.pdf failed ({e}); falling back to screenshot→PDF")

    try:
        png_bytes = await page.screenshot(full_page=True, type="png")
    except PlaywrightError as e:
        raise RenderError(f"failed to generate PDF: {e}") from e
    return screenshot_to_paginated_pdf(png_bytes, landscape=opts.landscape)


async def capture_one(context, url: str, out_path: Path, opts: RenderOptions,
                      logcb: LogCallback = print) -> Path:
    """
    Render a single URL to out_path in a fresh tab of the shared context.
    The tab is closed whatever happens.
    """
    page = await context.new_page()
    try:
        logcb(f"[NAVIGATE] {url}")
        try:
            await page.goto(url, wait_until="load", timeout=opts.timeout_ms)
            await page.wait_for_selector("body", state="visible", timeout=opts.timeout_ms)
        except PlaywrightError as e:
            raise RenderError(f"failed to load page: {e}") from e
        if opts.delay_ms > 0:
            logcb(f"[DELAY] Waiting {opts.delay_ms} ms")
            await page.wait_for_timeout(opts.delay_ms)
        pdf_bytes = await print_page(page, opts, logcb=logcb)
    finally:
        await page.close()

    try:
        out_path.write_bytes(pdf_bytes)
    except OSError as e:
        raise OutputError(f"failed to save PDF: {e}") from e

    logcb(f"[DONE] Successfully generated PDF for {url}: {out_path}")
    return out_path


async def render_all(context, urls: List[str], opts: RenderOptions,
                     logcb: LogCallback = print) -> BatchResult:
    targets = assign_filenames(urls, opts.output_dir, opts.prefix)
    result = BatchResult()
    sem = asyncio.Semaphore(opts.concurrency) if opts.concurrency > 0 else None

    async def _job(url: str, out_path: Path):
        try:
            if sem is None:
                await capture_one(context, url, out_path, opts, logcb=logcb)
            else:
                async with sem:
                    await capture_one(context, url, out_path, opts, logcb=logcb)
        except Exception as e:
            logcb(f"[ERROR] Error processing {url}: {e}")
            result.failed[url] = str(e)
        else:
            result.saved.append(out_path)

    await asyncio.gather(*(_job(url, path) for url, path in targets.items()))
    logcb(f"[SUMMARY] {len(result.saved)} saved, {len(result.failed)} failed")
    return result


async def run_batch(urls: List[str], opts: RenderOptions, logcb: LogCallback = print,
                    index_url: Optional[str] = None) -> BatchResult:
    launch_args = {"headless": True, "args": ["--disable-gpu"]}
    if opts.no_sandbox:
        launch_args["args"].extend(["--no-sandbox", "--disable-setuid-sandbox"])

    async with async_playwright() as p:
        browser = await p.chromium.launch(**launch_args)
        try:
            context = await browser.new_context()
            if index_url:
                urls = await fetch_index_links(context, index_url, opts, logcb=logcb)
            return await render_all(context, urls, opts, logcb=logcb)
        finally:
            await browser.close()

# ---------- CLI ----------

def scale_arg(value: str) -> float:
    try:
        scale = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid scale: {value!r}")
    if math.isnan(scale):
        raise argparse.ArgumentTypeError(
            f"scale must be a number between {MIN_SCALE} and {MAX_SCALE}, got {value!r}")
    return scale


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pdfbatch",
        description="Render web pages (or the .json links of an index page) to PDF files.",
    )
    parser.add_argument("-o", "--output", default="pdfs", help="Directory to save PDFs")
    parser.add_argument("--urls", default="", help="Comma-separated list of URLs to convert")
    parser.add_argument("--index", default="", help="URL of the directory index page")
    parser.add_argument("--scale", type=scale_arg, default=1.0,
                        help=f"Scale of the webpage rendering (between {MIN_SCALE} and {MAX_SCALE})")
    parser.add_argument("--prefix", default="", help="Prefix to add to output filenames")
    parser.add_argument("--query", default="",
                        help="Query string appended to every link found on the index page, e.g. theme=print")
    parser.add_argument("--orientation", choices=["landscape", "portrait"], default="landscape",
                        help="Page orientation")
    parser.add_argument("--delay-ms", type=int, default=DEFAULT_DELAY_MS,
                        help="Wait after page load before printing (and after loading the index page)")
    parser.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS, help="Navigation timeout")
    parser.add_argument("--concurrency", type=int, default=0,
                        help="Max tabs rendering at once (0 = all URLs at once)")
    parser.add_argument("--no-sandbox", action="store_true",
                        help="Launch Chromium with --no-sandbox (off by default; "
                             "pass it when running as root or inside a container)")
    parser.add_argument("--fallback", choices=["screenshot", "none"], default="screenshot",
                        help="What to do when Chromium's PDF engine fails")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def options_from_args(args: argparse.Namespace, logcb: LogCallback = print) -> RenderOptions:
    return RenderOptions(
        output_dir=Path(args.output),
        scale=clamp_scale(args.scale, logcb=logcb),
        landscape=(args.orientation == "landscape"),
        prefix=args.prefix.strip(),
        query=args.query.strip(),
        delay_ms=max(0, args.delay_ms),
        timeout_ms=args.timeout_ms,
        concurrency=max(0, args.concurrency),
        no_sandbox=args.no_sandbox,
        fallback=args.fallback,
    )


def make_logcb(log: logging.Logger) -> LogCallback:
    """Route tagged progress lines to a logger at a level matching the tag."""
    def logcb(msg: str):
        if msg.startswith("[ERROR]"):
            log.error(msg)
        elif "[WARN]" in msg:
            log.warning(msg)
        elif msg.startswith("[DELAY]"):
            log.debug(msg)
        else:
            log.info(msg)
    return logcb


def configure_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    index_url = args.index.strip()
    urls = [] if index_url else parse_url_list(args.urls)
    if not index_url and not urls:
        parser.error("Please provide either --urls or --index")

    configure_logging(args.verbose)
    logcb = make_logcb(logger)
    opts = options_from_args(args, logcb=logcb)

    try:
        opts.output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error("Failed to create output directory: %s", e)
        return 1

    try:
        asyncio.run(run_batch(urls, opts, logcb=logcb, index_url=index_url or None))
    except IndexPageError as e:
        logger.error("Failed to process index page: %s", e)
        return 1
    except PlaywrightError as e:
        logger.error("Browser failure: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
