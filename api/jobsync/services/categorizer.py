from __future__ import annotations

import re
from dataclasses import dataclass, field

DEFAULT_CATEGORY_ID = 1
DESCRIPTION_SCAN_CHARS = 5000

TITLE = "title"
TAG = "tag"
DESCRIPTION = "description"
ALL_TIERS = frozenset({TITLE, TAG, DESCRIPTION})
NAME_TIERS = frozenset({TITLE, TAG})

# Abbreviations are matched as whole tokens and never score description text.
# As plain substrings they hit inside ordinary words: "dev" would put
# "Business Development Rep" under Programming instead of Sales.
SHORT_KEYWORDS = {
    "ai",
    "apm",
    "aws",
    "bdr",
    "bi",
    "dev",
    "gcp",
    "gpm",
    "ios",
    "ml",
    "php",
    "pm",
    "pmo",
    "sdr",
    "sem",
    "seo",
    "sql",
    "sre",
    "tpm",
    "ui",
    "ux",
    "vue",
}


@dataclass(frozen=True, slots=True)
class Keyword:
    text: str
    tiers: frozenset[str] = ALL_TIERS
    whole_token: bool = False

    def occurrences(self, haystack: str) -> int:
        if self.whole_token:
            return len(_token_pattern(self.text).findall(haystack))
        return haystack.count(self.text)


@dataclass(frozen=True, slots=True)
class Category:
    id: int
    name: str
    slug: str
    keywords: tuple[Keyword, ...] = field(default_factory=tuple)


def _keywords(*texts: str) -> tuple[Keyword, ...]:
    keywords: list[Keyword] = []
    for text in texts:
        lowered = text.lower()
        if lowered in SHORT_KEYWORDS:
            keywords.append(Keyword(lowered, tiers=NAME_TIERS, whole_token=True))
        else:
            keywords.append(Keyword(lowered))
    return tuple(keywords)


CATEGORIES: dict[int, Category] = {
    1: Category(
        1,
        "Programming & Development",
        "programming-development",
        _keywords(
            "developer", "engineer", "programmer", "software", "frontend", "backend", "full stack",
            "fullstack", "web developer", "mobile developer", "react", "angular", "vue", "node",
            "python", "java", "javascript", "typescript", "php", "ruby", "golang", "rust", "kotlin",
            "swift", "flutter", "ios", "android", "coding", "dev", "programming",
        ),
    ),
    2: Category(
        2,
        "Project Management",
        "project-management",
        _keywords(
            "project manager", "scrum master", "agile", "program manager", "delivery manager", "pmo",
            "kanban", "project coordinator", "technical project manager", "tpm",
            "technical program manager",
        ),
    ),
    3: Category(
        3,
        "Design",
        "design",
        _keywords(
            "designer", "ui", "ux", "ui/ux", "graphic design", "web design", "product design",
            "visual design", "interaction design", "figma", "sketch", "adobe", "illustrator",
            "photoshop", "creative",
        ),
    ),
    4: Category(
        4,
        "Marketing",
        "marketing",
        _keywords(
            "marketing", "content", "seo", "sem", "social media", "digital marketing", "growth", "brand",
            "copywriter", "content writer", "marketing manager", "social media manager",
            "email marketing", "demand generation",
        ),
    ),
    5: Category(
        5,
        "Data Science & Analytics",
        "data-science-analytics",
        _keywords(
            "data scientist", "data analyst", "machine learning", "ml", "ai", "artificial intelligence",
            "data engineer", "analytics", "business intelligence", "bi", "tableau", "power bi", "sql",
            "data", "statistics", "analyst",
        ),
    ),
    6: Category(
        6,
        "DevOps & Infrastructure",
        "devops-infrastructure",
        _keywords(
            "devops", "sre", "site reliability", "infrastructure", "cloud", "aws", "azure", "gcp",
            "kubernetes", "docker", "terraform", "ci/cd", "jenkins", "automation",
            "system administrator", "sysadmin",
        ),
    ),
    7: Category(
        7,
        "Customer Support",
        "customer-support",
        _keywords(
            "customer support", "customer service", "technical support", "help desk",
            "customer success", "support engineer", "support specialist", "client success",
        ),
    ),
    8: Category(
        8,
        "Sales",
        "sales",
        _keywords(
            "sales", "account executive", "bdr", "sdr", "business development", "sales representative",
            "account manager", "sales manager", "inside sales",
        ),
    ),
    9: Category(
        9,
        "Product Management",
        "product-management",
        _keywords(
            "product manager", "product owner", "product lead", "head of product", "vp of product",
            "director of product", "associate product manager", "apm", "group product manager", "gpm",
            "pm",
        ),
    ),
}

# Title and tag tiers stop at the first category in this order that matches.
CATEGORY_PRIORITY: tuple[int, ...] = (1, 2, 9, 3, 4, 5, 6, 7, 8)


def determine_category(title: str | None, description: str | None, tags: list[str] | None = None) -> int:
    """Map a listing to a category id.

    Title keywords decide first, then tag keywords, each taking the first
    category in CATEGORY_PRIORITY with a hit. Only when both miss is the
    description prefix scored by keyword occurrence count, ties going to the
    lowest category id. Empty input falls back to DEFAULT_CATEGORY_ID.
    """
    title_match = _first_match([(title or "").lower()], TITLE)
    if title_match is not None:
        return title_match

    tag_match = _first_match([tag.lower() for tag in tags or [] if tag], TAG)
    if tag_match is not None:
        return tag_match

    return _score_description((description or "")[:DESCRIPTION_SCAN_CHARS].lower())


def category_name(category_id: int) -> str:
    category = CATEGORIES.get(category_id)
    return category.name if category else CATEGORIES[DEFAULT_CATEGORY_ID].name


def _first_match(haystacks: list[str], tier: str) -> int | None:
    haystacks = [haystack for haystack in haystacks if haystack.strip()]
    if not haystacks:
        return None
    for category_id in CATEGORY_PRIORITY:
        for keyword in CATEGORIES[category_id].keywords:
            if tier not in keyword.tiers:
                continue
            if any(keyword.occurrences(haystack) for haystack in haystacks):
                return category_id
    return None


def _score_description(text: str) -> int:
    if not text.strip():
        return DEFAULT_CATEGORY_ID
    best_id = DEFAULT_CATEGORY_ID
    best_score = 0
    for category_id in sorted(CATEGORIES):
        score = sum(
            keyword.occurrences(text)
            for keyword in CATEGORIES[category_id].keywords
            if DESCRIPTION in keyword.tiers
        )
        if score > best_score:
            best_id = category_id
            best_score = score
    return best_id


_TOKEN_PATTERNS: dict[str, re.Pattern[str]] = {}


def _token_pattern(text: str) -> re.Pattern[str]:
    pattern = _TOKEN_PATTERNS.get(text)
    if pattern is None:
        pattern = re.compile(rf"(?<![a-z0-9]){re.escape(text)}(?![a-z0-9])")
        _TOKEN_PATTERNS[text] = pattern
    return pattern
