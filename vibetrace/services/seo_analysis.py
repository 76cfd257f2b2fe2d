"""
SEO adapter: fetch a deployed page plus robots.txt, sitemap.xml and llms.txt and run structural checks.

Each failed check becomes a finding with a canonical severity and an authored
narrative. A missing or malformed auxiliary file degrades to its own finding.
Only a failed fetch of the primary page short-circuits the run, producing the
single critical seo-fetch-failed finding.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup

from vibetrace.schemas.analyzers import SeoCheckFinding, SeoResult
from vibetrace.schemas.findings import FindingNarrative, SeverityLevel
from vibetrace.services.narrative import build_fix_prompt

if TYPE_CHECKING:
    from vibetrace.core.config import Settings

logger = logging.getLogger(__name__)

TITLE_MIN_CHARS = 10
TITLE_MAX_CHARS = 65
META_DESCRIPTION_MAX_CHARS = 160
_EVIDENCE_MAX_CHARS = 200


@dataclass
class PageData:
    """Primary page as fetched for analysis."""

    url: str
    html: str
    status_code: int
    response_time_ms: int
    content_length: int


def _check(
    severity: SeverityLevel,
    rule_id: str,
    location: str,
    plain_english: str,
    business_impact: str,
    fix_body: str,
    verification_step: str,
    evidence: str = "",
) -> SeoCheckFinding:
    return SeoCheckFinding(
        severity=severity,
        rule_id=rule_id,
        location=location,
        evidence=evidence[:_EVIDENCE_MAX_CHARS],
        narrative=FindingNarrative(
            plain_english=plain_english,
            business_impact=business_impact,
            fix_prompt=build_fix_prompt(fix_body),
            verification_step=verification_step,
        ),
    )


def origin_of(url: str) -> str:
    """scheme://host[:port] of url."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def fetch_failed_finding(url: str) -> SeoCheckFinding:
    """The single finding returned when the primary page cannot be fetched."""
    return _check(
        "critical",
        "seo-fetch-failed",
        url,
        "We could not load your site to check it for search-engine problems.",
        "If our scanner cannot load your site, search engines may not be able to either, "
        "so your pages may never show up in search results.",
        f"My site at {url} cannot be loaded by outside visitors. Please check that the homepage "
        "is publicly reachable, returns a normal page without errors, and is not hidden behind a login screen.",
        f"Open {url} in a private browser window while logged out. You should see your homepage, "
        "not an error or a login page.",
    )


async def fetch_page(client: httpx.AsyncClient, url: str, deadline_sec: float | None = None) -> PageData:
    """
    GET the primary page.

    Raises httpx.HTTPError on transport failure, or TimeoutError when the whole
    request (body included) takes longer than deadline_sec.
    """
    start = time.perf_counter()
    async with asyncio.timeout(deadline_sec):
        response = await client.get(url, headers={"Accept": "text/html"})
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    return PageData(
        url=url,
        html=response.text,
        status_code=response.status_code,
        response_time_ms=elapsed_ms,
        content_length=len(response.content),
    )


async def _fetch_auxiliary(
    client: httpx.AsyncClient,
    url: str,
    deadline_sec: float | None = None,
) -> httpx.Response | None:
    """GET an auxiliary file; None when the request fails or runs past deadline_sec."""
    try:
        async with asyncio.timeout(deadline_sec):
            return await client.get(url)
    except (httpx.HTTPError, TimeoutError) as e:
        logger.info("Auxiliary fetch failed: %s (%s)", url, type(e).__name__)
        return None


def robots_blocks_all(text: str) -> bool:
    """True if the group for user-agent '*' contains 'Disallow: /' (the whole site)."""
    in_wildcard_group = False
    previous_was_agent = False
    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        field, value = (part.strip() for part in line.split(":", 1))
        field = field.lower()
        if field == "user-agent":
            # Consecutive user-agent lines share one group.
            if not previous_was_agent:
                in_wildcard_group = False
            in_wildcard_group = in_wildcard_group or value == "*"
            previous_was_agent = True
            continue
        previous_was_agent = False
        if in_wildcard_group and field == "disallow" and value == "/":
            return True
    return False


def _meta_content(soup: BeautifulSoup, attr: str, value: str) -> str:
    tag = soup.find("meta", attrs={attr: lambda v: v is not None and v.strip().lower() == value})
    if tag is None:
        return ""
    content = tag.get("content")
    return content.strip() if isinstance(content, str) else ""


def _has_link_rel(soup: BeautifulSoup, rel: str) -> bool:
    for link in soup.find_all("link"):
        rels = link.get("rel") or []
        if isinstance(rels, str):
            rels = rels.split()
        if rel in (r.lower() for r in rels) and link.get("href"):
            return True
    return False


def check_page(page: PageData, settings: "Settings") -> list[SeoCheckFinding]:
    """Run the structural and performance checks on the primary page."""
    url = page.url
    origin = origin_of(url)
    soup = BeautifulSoup(page.html, "html.parser")
    findings: list[SeoCheckFinding] = []

    if page.status_code >= 400:
        findings.append(
            _check(
                "high",
                "seo-http-error",
                url,
                f"Your homepage answered with an error code ({page.status_code}) instead of a normal page.",
                "Search engines drop pages that return errors, so this page cannot rank.",
                f"My homepage at {url} returns HTTP status {page.status_code}. Please find out why the "
                "page is failing and make it return a normal page with status 200 for everyone.",
                f"Open {url} in a private browser window and confirm the page loads without an error.",
                evidence=str(page.status_code),
            )
        )

    title = soup.title.get_text(" ", strip=True) if soup.title else ""
    if not title:
        findings.append(
            _check(
                "critical",
                "seo-missing-title",
                url,
                "Your page has no title. The title is the blue link people click in Google results.",
                "Google rarely ranks a page without a title; it is the most important on-page search signal.",
                "Add a descriptive title tag to the head of my homepage. Keep it between 50 and 60 "
                "characters, include the main phrase people would search for, and say clearly what the page offers.",
                "View the page source and look for the title tag. It should contain a meaningful phrase.",
            )
        )
    elif len(title) < TITLE_MIN_CHARS:
        findings.append(
            _check(
                "high",
                "seo-title-too-short",
                url,
                f'Your page title is only {len(title)} characters ("{title}"), too short to rank for anything useful.',
                "Short titles miss search phrases and look unfinished in search results.",
                "Make the title tag on my homepage 50 to 60 characters long. Include the product name, "
                "the main phrase people would search for, and a short benefit.",
                "Check the title length in the page source; it should be about 50 to 60 characters.",
                evidence=title,
            )
        )
    elif len(title) > TITLE_MAX_CHARS:
        findings.append(
            _check(
                "medium",
                "seo-title-too-long",
                url,
                f"Your page title is {len(title)} characters. Google cuts titles off after about 60 characters.",
                "A cut-off title looks messy in search results and can hide your key message.",
                f"Shorten the title tag on my homepage to under 60 characters while keeping the brand "
                f"name and the most important phrase. The current title is: '{title}'",
                "Search for your site on Google and confirm the title shows in full.",
                evidence=title,
            )
        )

    description = _meta_content(soup, "name", "description")
    if not description:
        findings.append(
            _check(
                "high",
                "seo-missing-meta-description",
                url,
                "Your page has no meta description, the short summary shown under your title in Google.",
                "Without one Google writes its own summary, usually a poor one, and fewer people click through.",
                "Add a meta description tag to the head of my homepage. Write 140 to 160 characters that "
                "explain what the page does and why someone should click, using the main search phrase naturally.",
                'View the page source and search for name="description". It should have meaningful content.',
            )
        )
    elif len(description) > META_DESCRIPTION_MAX_CHARS:
        findings.append(
            _check(
                "low",
                "seo-meta-description-too-long",
                url,
                f"Your meta description is {len(description)} characters; Google cuts it off at about 160.",
                "The part that gets cut off may hide your call to action in search results.",
                "Trim the meta description on my homepage to under 155 characters and keep the most "
                f"important phrase near the start. It currently begins: '{description[:80]}...'",
                "Check the meta description length in the page source; it should be under 160 characters.",
                evidence=description,
            )
        )

    if not _has_link_rel(soup, "canonical"):
        findings.append(
            _check(
                "high",
                "seo-missing-canonical",
                url,
                "Your page has no canonical tag, which tells Google which address is the official one for this page.",
                "If the page is reachable under several addresses, Google may split its ranking between them.",
                f"Add a canonical link tag pointing to {url} in the head of my homepage. On dynamic pages, "
                "make the canonical always point to the clean, preferred address of that page.",
                'View the page source and search for rel="canonical". Its address should be the preferred one.',
            )
        )

    h1_count = len(soup.find_all("h1"))
    if h1_count == 0:
        findings.append(
            _check(
                "high",
                "seo-missing-h1",
                url,
                "Your page has no main heading (H1). Google uses it to understand what the page is about.",
                "Without a main heading your page is weaker for the searches you want to win.",
                "Add exactly one main heading (an h1 tag) to my homepage content. It should include the "
                "main search phrase and state plainly what the page offers.",
                "Search the page source for '<h1'. There should be exactly one.",
            )
        )
    elif h1_count > 1:
        findings.append(
            _check(
                "medium",
                "seo-multiple-h1",
                url,
                f"Your page has {h1_count} main headings (H1). There should be only one.",
                "Several main headings blur the signal about what the page is really about.",
                "Keep only the most important h1 heading on my homepage and turn the other h1 headings "
                "into h2 or h3 headings.",
                "Search the page source for '<h1'. There should be exactly one.",
                evidence=str(h1_count),
            )
        )

    missing_og = [
        prop
        for prop in ("og:title", "og:description", "og:image")
        if not _meta_content(soup, "property", prop)
    ]
    if missing_og:
        findings.append(
            _check(
                "medium",
                "seo-missing-og-tags",
                url,
                f"Your page is missing social sharing tags ({', '.join(missing_og)}). "
                "They control how your link looks on LinkedIn, Slack or X.",
                "Without them shared links look plain, with no image or summary, and get fewer clicks.",
                "Add Open Graph meta tags to the head of my homepage: og:title, og:description, "
                f"og:image (a full image address), og:type set to website, and og:url set to {url}.",
                "Paste your address into an Open Graph preview tool and check the image and text appear.",
                evidence=", ".join(missing_og),
            )
        )

    if soup.find("script", attrs={"type": lambda v: v is not None and v.strip().lower() == "application/ld+json"}) is None:
        findings.append(
            _check(
                "medium",
                "seo-missing-schema",
                url,
                "Your page has no structured data, the machine-readable labels that help Google understand your content.",
                "Structured data unlocks richer search results (ratings, FAQs, breadcrumbs) that get more clicks.",
                "Add a JSON-LD structured data block to the head of my homepage describing the site as a "
                f"schema.org WebSite with its name and the address {origin}.",
                "Run your address through Google's Rich Results Test and confirm structured data is detected.",
            )
        )

    if not _meta_content(soup, "name", "twitter:card") and not _meta_content(soup, "property", "twitter:card"):
        findings.append(
            _check(
                "low",
                "seo-missing-twitter-card",
                url,
                "Your page has no X (Twitter) card tags, which control how your link looks when shared on X.",
                "Without them link previews on X show little text and no image, so fewer people click.",
                "Add X card meta tags to the head of my homepage: twitter:card set to summary_large_image, "
                "plus twitter:title, twitter:description and twitter:image.",
                "Share your link in a private X post draft and check that a large image preview appears.",
            )
        )

    if page.response_time_ms > settings.SEO_SLOW_RESPONSE_MS:
        findings.append(
            _check(
                "medium",
                "seo-slow-response",
                url,
                f"Your page took {page.response_time_ms / 1000:.1f} seconds to respond. Google uses speed as a ranking factor.",
                "Slow pages lose visitors before they load and rank below faster competitors.",
                "Make my homepage load faster. Turn on compression, serve static files from a CDN, "
                "use modern image formats, and cache pages that do not change often.",
                "Run a free speed test at pagespeed.web.dev and aim for a score above 80.",
                evidence=f"{page.response_time_ms}ms",
            )
        )

    if page.content_length > settings.SEO_LARGE_PAGE_BYTES:
        findings.append(
            _check(
                "low",
                "seo-large-page-size",
                url,
                f"Your page's HTML is {page.content_length // 1024}KB, which is large. Google prefers lean pages.",
                "Large pages render slowly, which hurts Core Web Vitals and rankings.",
                "Reduce the size of my homepage HTML. Move large inline images and data blobs into "
                "separate files that load lazily, and paginate long lists.",
                "Save the page source and check its size; aim for under 100KB.",
                evidence=f"{page.content_length} bytes",
            )
        )

    return findings


async def check_robots(
    client: httpx.AsyncClient,
    origin: str,
    deadline_sec: float | None = None,
) -> list[SeoCheckFinding]:
    location = f"{origin}/robots.txt"
    response = await _fetch_auxiliary(client, location, deadline_sec)
    if response is None or response.status_code != 200:
        return [
            _check(
                "medium",
                "seo-missing-robots-txt",
                location,
                "Your site has no robots.txt, the file that gives search engine crawlers their instructions.",
                "Without it crawlers spend their time on admin pages and duplicates instead of the pages you want found.",
                "Create a robots.txt file at the root of my site that allows all crawlers, disallows "
                f"the /api/ and /admin/ sections, and points to the sitemap at {origin}/sitemap.xml.",
                f"Open {location} in your browser. You should see plain text instructions, not an error page.",
            )
        ]
    if robots_blocks_all(response.text):
        return [
            _check(
                "critical",
                "seo-robots-blocking-all",
                location,
                "Your robots.txt tells every search engine to stay away from your whole site, so you are invisible on Google.",
                "No page of your site can appear in search results while this rule is in place.",
                "Fix my robots.txt file. Remove the rule that disallows the whole site for all crawlers "
                "and instead allow everything except the /api/ and /admin/ sections.",
                f"Open {location} and confirm there is no 'Disallow: /' line under 'User-agent: *'.",
                evidence="Disallow: /",
            )
        ]
    return []


async def check_sitemap(
    client: httpx.AsyncClient,
    origin: str,
    deadline_sec: float | None = None,
) -> list[SeoCheckFinding]:
    location = f"{origin}/sitemap.xml"
    response = await _fetch_auxiliary(client, location, deadline_sec)
    if response is None or response.status_code != 200:
        return [
            _check(
                "high",
                "seo-missing-sitemap",
                location,
                "Your site has no sitemap.xml, the list of pages you hand directly to Google.",
                "Without a sitemap Google must find pages by following links, which is slower and can miss new pages.",
                "Generate a sitemap.xml for my site that lists every public page and keeps itself up to "
                "date when pages are added, then tell me how to submit it in Google Search Console.",
                f"Open {location}. You should see an XML list of your pages, not an error page.",
            )
        ]
    soup = BeautifulSoup(response.text, "html.parser")
    if soup.find(["urlset", "sitemapindex"]) is None:
        return [
            _check(
                "medium",
                "seo-invalid-sitemap",
                location,
                "Your sitemap.xml exists but is not a valid sitemap, so search engines cannot read it.",
                "A broken sitemap is ignored, which means new pages are found more slowly.",
                "My sitemap.xml is not a valid XML sitemap. Please make it return a proper sitemap with "
                "a urlset listing every public page address.",
                f"Open {location} and confirm it shows an XML list of page addresses.",
                evidence=response.text[:_EVIDENCE_MAX_CHARS],
            )
        ]
    return []


async def check_llms_txt(
    client: httpx.AsyncClient,
    origin: str,
    deadline_sec: float | None = None,
) -> list[SeoCheckFinding]:
    location = f"{origin}/llms.txt"
    response = await _fetch_auxiliary(client, location, deadline_sec)
    if response is not None and response.status_code == 200:
        return []
    return [
        _check(
            "info",
            "seo-missing-llms-txt",
            location,
            "Your site has no llms.txt, a new kind of file that tells AI assistants what your site is about.",
            "As more people search through AI assistants, llms.txt helps your site get cited in their answers.",
            "Create an llms.txt file at the root of my site with the site name, its address, two or "
            "three sentences about what the product does and who it is for, and a list of the key pages.",
            f"Open {location}. It should show a plain text file, not an error page.",
        )
    ]


async def run_seo_analysis(
    target_url: str,
    settings: "Settings",
    transport: httpx.AsyncBaseTransport | None = None,
) -> SeoResult:
    """Fetch target_url and its auxiliary files and return SEO findings."""
    start = time.perf_counter()
    deadline = settings.SEO_REQUEST_TIMEOUT_SEC
    timeout = httpx.Timeout(deadline)
    async with httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": settings.SEO_USER_AGENT},
        transport=transport,
    ) as client:
        try:
            page = await fetch_page(client, target_url, deadline)
        except (httpx.HTTPError, httpx.InvalidURL, TimeoutError) as e:
            logger.warning(
                "SEO primary fetch failed",
                extra={"target_url": target_url, "error": type(e).__name__},
            )
            return SeoResult(
                target_url=target_url,
                findings=[fetch_failed_finding(target_url)],
                errors=[f"Primary page fetch failed: {type(e).__name__}"],
                duration_seconds=time.perf_counter() - start,
            )

        findings = check_page(page, settings)
        origin = origin_of(target_url)
        findings.extend(await check_robots(client, origin, deadline))
        findings.extend(await check_sitemap(client, origin, deadline))
        findings.extend(await check_llms_txt(client, origin, deadline))

    duration = time.perf_counter() - start
    logger.info(
        "SEO analysis completed",
        extra={"target_url": target_url, "finding_count": len(findings), "duration_seconds": duration},
    )
    return SeoResult(target_url=target_url, findings=findings, duration_seconds=duration)
