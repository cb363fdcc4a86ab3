"""Organization context composed into every chat prompt."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .config import config

if TYPE_CHECKING:
    from .collaborators import OrganizationProfileStore
    from .models import OrganizationProfile

logger = config.get_logger(__name__)

GENERIC_CONTEXT = "You are analyzing feedback for a general software company."

DEFAULT_CATEGORY_MAPPINGS: dict[str, dict[str, list[str]]] = {
    "SaaS": {
        "Bug Report": ["bug", "error", "crash", "not working", "broken", "issue"],
        "Feature Request": ["feature", "enhancement", "improvement", "add", "need", "want"],
        "Performance": ["slow", "loading", "timeout", "performance", "speed", "lag"],
        "Integration": ["integration", "API", "connect", "sync", "import", "export"],
        "UI/UX": [
            "interface",
            "design",
            "usability",
            "confusing",
            "difficult",
            "user experience",
        ],
        "Security": [
            "security",
            "privacy",
            "access",
            "permission",
            "authentication",
            "login",
        ],
    },
    "E-commerce": {
        "Bug Report": ["bug", "error", "not working", "broken", "cart", "checkout"],
        "Product Request": ["product", "inventory", "out of stock", "availability"],
        "Shipping": ["shipping", "delivery", "tracking", "fulfillment"],
        "Payment": ["payment", "billing", "charge", "refund", "transaction"],
        "UI/UX": ["website", "navigation", "search", "mobile", "responsive"],
        "Customer Service": ["support", "help", "service", "response", "agent"],
    },
    "Other": {
        "Bug Report": ["bug", "error", "issue", "problem", "not working"],
        "Feature Request": ["feature", "enhancement", "improvement", "suggestion"],
        "Complaint": ["complaint", "dissatisfied", "unhappy", "frustrated"],
        "Praise": ["great", "excellent", "love", "amazing", "perfect"],
        "Question": ["question", "how", "what", "when", "where", "help"],
    },
}

DEFAULT_PRIORITY_KEYWORDS: dict[str, list[str]] = {
    "SaaS": [
        "critical",
        "urgent",
        "down",
        "outage",
        "security",
        "data loss",
        "cannot access",
        "enterprise",
    ],
    "E-commerce": [
        "checkout",
        "payment",
        "order",
        "shipping",
        "refund",
        "cannot buy",
        "cart",
    ],
    "Fintech": ["security", "money", "transaction", "fraud", "compliance", "regulatory"],
    "Healthcare": ["patient", "critical", "emergency", "compliance", "HIPAA", "safety"],
    "Other": ["critical", "urgent", "important", "blocking", "cannot use"],
}

DEFAULT_VALUE_WORDS = [
    "enterprise",
    "corporate",
    "business",
    "company",
    "organization",
    "team",
    "department",
    "manager",
    "director",
    "executive",
    "premium",
    "pro",
    "plus",
    "advanced",
    "unlimited",
]


def default_category_mapping(industry: str) -> dict[str, list[str]]:
    return DEFAULT_CATEGORY_MAPPINGS.get(industry, DEFAULT_CATEGORY_MAPPINGS["Other"])


def default_priority_keywords(industry: str) -> list[str]:
    return DEFAULT_PRIORITY_KEYWORDS.get(industry, DEFAULT_PRIORITY_KEYWORDS["Other"])


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) if items else "- None specified"


def render_context(profile: OrganizationProfile | None) -> str:
    """Render an organization profile as a prompt preamble.

    Missing taxonomy, priority keywords and value words fall back to the
    industry defaults. Identical profiles always render identically.

    Returns:
        The context text; a generic one-liner when there is no profile.
    """
    if profile is None:
        return GENERIC_CONTEXT

    industry = profile.industry or "Other"
    product = profile.product_type or "a software product"
    categories = profile.category_mapping or default_category_mapping(industry)
    priority_keywords = profile.priority_keywords or default_priority_keywords(industry)
    value_words = profile.customer_value_words or DEFAULT_VALUE_WORDS

    segments = [
        f"{segment.name}: {', '.join(segment.characteristics) or 'no details'} "
        f"({segment.value} value)"
        for segment in profile.customer_segments
    ]
    taxonomy = [
        f"{name}: {', '.join(keywords)}" for name, keywords in categories.items()
    ]

    sections = [
        f"You are analyzing customer feedback for {product} "
        f"in the {industry} industry.",
        "Company Context:\n"
        f"- Industry: {industry}\n"
        f"- Product: {product}\n"
        f"- Company Size: {profile.company_size or 'Unknown'}\n"
        f"- Target Market: {profile.target_market or 'Unspecified'}",
        f"Customer Segments:\n{_bullets(segments)}",
        f"Business Goals:\n{_bullets(profile.business_goals)}",
        f"Current Challenges:\n{_bullets(profile.current_challenges)}",
        f"Key Product Features:\n{_bullets(profile.product_features)}",
        f"Feedback Categories:\n{_bullets(taxonomy)}",
        "Priority Keywords (indicate high-priority issues):\n"
        f"{', '.join(priority_keywords)}",
        f"High-Value Customer Indicators:\n{', '.join(value_words)}",
        "When analyzing feedback, consider:\n"
        "1. How it relates to the company's business goals\n"
        "2. Which customer segment it impacts\n"
        "3. Priority level based on keywords and customer value\n"
        "4. Relationship to existing product features and challenges",
    ]
    return "\n\n".join(sections)


class ContextComposer:
    """Builds the organization context block from the profile store."""

    def __init__(self, profile_store: OrganizationProfileStore) -> None:
        self.profile_store = profile_store

    async def build_context(self, organization_id: str) -> str:
        """Compose the context for an organization.

        A missing profile yields the generic context. Errors from the profile
        store propagate to the caller.

        Returns:
            Context text for the system prompt.
        """
        profile = await self.profile_store.get_organization_profile(organization_id)
        if profile is None:
            logger.info(
                "No profile configured for %s; using generic context", organization_id
            )
        return render_context(profile)
