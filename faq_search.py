"""
FusionForge Storefront — FAQ Search

Keyword search over an in-process FAQ set. Three passes, each FAQ matched at
most once:
  1. question contains the whole query              → exact, score 100
  2. answer contains the query, or any query word
     (> 2 chars) hits question/answer               → partial / semantic
  3. a tag contains the query or a query word       → tag, 60 + 0.3·popularity
Ranking adds popularity and helpful votes on top of the match score.
"""
from __future__ import annotations
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, Field

from models import utcnow

logger = logging.getLogger(__name__)


class FAQItem(BaseModel):
    id: str
    question: str
    answer: str
    category: str
    tags: list[str] = Field(default_factory=list)
    helpful: int = 0
    not_helpful: int = 0
    popularity: float = 0

    @property
    def helpful_ratio(self) -> float:
        return self.helpful / max(1, self.helpful + self.not_helpful)


@dataclass
class FAQSearchResult:
    item: FAQItem
    relevance_score: float
    match_type: str  # exact | partial | semantic | tag
    highlighted_text: str


@dataclass
class SearchLogEntry:
    query: str
    result_count: int = 0
    timestamp: float = field(default_factory=lambda: utcnow().timestamp())


SEED_FAQS: list[dict] = [
    {
        "question": "What's the difference between budget, mid-range, and high-end PC builds?",
        "answer": "Budget builds (₹15K-30K) are perfect for basic computing, office work, and light gaming. "
                  "Mid-range builds (₹40K-70K) handle modern gaming at 1080p and content creation. "
                  "High-end builds (₹80K+) deliver 4K gaming, professional workloads, and future-proofing.",
        "category": "PC Building", "tags": ["budget", "performance", "gaming", "comparison"],
        "helpful": 45, "not_helpful": 2, "popularity": 85,
    },
    {
        "question": "How do I know if components are compatible with each other?",
        "answer": "Our PC configurator automatically checks compatibility! It verifies CPU-motherboard sockets, "
                  "RAM-motherboard memory types, PSU wattage requirements, case clearance, and identifies "
                  "potential bottlenecks.",
        "category": "PC Building", "tags": ["compatibility", "configurator", "components"],
        "helpful": 38, "not_helpful": 1, "popularity": 72,
    },
    {
        "question": "My PC build isn't turning on. What should I check?",
        "answer": "First, verify all power connections: 24-pin motherboard, 8-pin CPU, and GPU power cables. "
                  "Check RAM is properly seated with clips engaged. Ensure PSU switch is ON and power cable "
                  "is connected. If still no response, try powering on with one RAM stick only.",
        "category": "Technical Support", "tags": ["troubleshooting", "power", "boot", "hardware"],
        "helpful": 52, "not_helpful": 4, "popularity": 68,
    },
    {
        "question": "How do I update my graphics card drivers?",
        "answer": "For NVIDIA cards, download GeForce Experience or visit nvidia.com/drivers. For AMD cards, "
                  "download AMD Software or visit amd.com/support. Uninstall old drivers using DDU before "
                  "installing new ones.",
        "category": "Technical Support", "tags": ["drivers", "gpu", "nvidia", "amd", "updates"],
        "helpful": 41, "not_helpful": 3, "popularity": 64,
    },
    {
        "question": "What warranty coverage do I get with my PC build?",
        "answer": "All components have manufacturer warranties (1-3 years depending on component). We provide "
                  "1-year assembly warranty covering our build quality. Extended warranties available for purchase.",
        "category": "Warranty", "tags": ["warranty", "coverage", "manufacturer", "assembly"],
        "helpful": 29, "not_helpful": 1, "popularity": 56,
    },
    {
        "question": "How do I claim warranty if a component fails?",
        "answer": "Contact us immediately with your order number and describe the issue. We'll guide you through "
                  "diagnostics and handle manufacturer warranty claims on your behalf. Most issues are "
                  "resolved within 7-14 days.",
        "category": "Warranty", "tags": ["warranty", "claim", "rma", "replacement"],
        "helpful": 33, "not_helpful": 2, "popularity": 49,
    },
    {
        "question": "How long does it take to build and ship my PC?",
        "answer": "Standard builds: 3-5 business days. Custom configurations: 5-7 business days. High-demand "
                  "components may extend timelines. Express assembly available for urgent orders.",
        "category": "Delivery", "tags": ["shipping", "timeline", "assembly", "delivery"],
        "helpful": 36, "not_helpful": 1, "popularity": 71,
    },
    {
        "question": "Do you ship nationwide? What are the charges?",
        "answer": "Yes! We ship across India via professional courier services. Free shipping on orders above "
                  "₹50,000. Standard shipping: ₹500-1500 depending on location. All shipments are insured "
                  "and trackable.",
        "category": "Delivery", "tags": ["shipping", "nationwide", "charges", "free shipping"],
        "helpful": 42, "not_helpful": 2, "popularity": 67,
    },
    {
        "question": "What payment methods do you accept?",
        "answer": "We accept UPI, Net Banking, Credit Cards, Debit Cards via Razorpay. EMI options available "
                  "for orders above ₹10,000 (3, 6, 9, 12 months). No-cost EMI available on select builds.",
        "category": "Payment", "tags": ["payment", "razorpay", "emi", "upi", "credit card"],
        "helpful": 47, "not_helpful": 1, "popularity": 78,
    },
    {
        "question": "Can I cancel or modify my order after placing it?",
        "answer": "Orders can be cancelled within 2 hours of placement for full refund. Modifications possible "
                  "before assembly begins. Partial refunds available for cancelled components.",
        "category": "Payment", "tags": ["cancel", "modify", "refund", "order changes"],
        "helpful": 25, "not_helpful": 3, "popularity": 43,
    },
    {
        "question": "Which build should I choose for 1440p gaming at 60+ FPS?",
        "answer": "For 1440p 60+ FPS, we recommend builds with RTX 4060 Ti or better. Our 'Performance Gamers' "
                  "category builds (₹65K-85K) are optimized for this. Key specs: RTX 4060 Ti/4070, "
                  "Ryzen 5 5600X or Intel i5-12400F, 16GB RAM.",
        "category": "Gaming", "tags": ["1440p", "gaming", "fps", "rtx 4060 ti", "performance"],
        "helpful": 39, "not_helpful": 2, "popularity": 81,
    },
    {
        "question": "What's the difference between RTX 4060 and RTX 4060 Ti for gaming?",
        "answer": "RTX 4060 Ti offers 15-20% better performance than RTX 4060. RTX 4060 handles 1080p "
                  "excellently, while 4060 Ti is better for 1440p gaming and has more VRAM in some models.",
        "category": "Gaming", "tags": ["rtx 4060", "rtx 4060 ti", "gpu comparison", "performance"],
        "helpful": 31, "not_helpful": 1, "popularity": 59,
    },
]

SYNONYMS = {
    "slow": ["performance", "speed", "lag", "fps"],
    "hot": ["temperature", "cooling", "thermal", "overheating"],
    "loud": ["noise", "fan", "quiet", "cooling"],
    "expensive": ["budget", "cheap", "affordable", "price"],
    "good": ["best", "recommended", "quality", "reliable"],
    "streaming": ["content creation", "obs", "encoding", "broadcast"],
    "work": ["productivity", "office", "professional", "business"],
}


def highlight(text: str, query: str) -> str:
    return re.sub(f"({re.escape(query)})", r"<mark>\1</mark>", text, flags=re.IGNORECASE)


SEARCH_LOG_SIZE = 1000


class FAQSearchService:
    def __init__(self, faqs: Optional[list[dict]] = None, search_log_size: int = SEARCH_LOG_SIZE):
        self.faqs: dict[str, FAQItem] = {}
        for idx, data in enumerate(faqs if faqs is not None else SEED_FAQS, start=1):
            item = FAQItem(id=f"faq_{idx}", **data)
            self.faqs[item.id] = item
        self.search_log: deque[SearchLogEntry] = deque(maxlen=search_log_size)

    @staticmethod
    def _words(query: str) -> list[str]:
        return [w for w in query.split() if len(w) > 2]

    def relevance(self, faq: FAQItem, words: list[str], query: str) -> float:
        question, answer = faq.question.lower(), faq.answer.lower()
        score = 0.0
        if query in question:
            score += 50
        if query in answer:
            score += 40
        for w in words:
            score += question.count(w) * 10 + answer.count(w) * 5
        for tag in faq.tags:
            if any(w in tag.lower() for w in words):
                score += 15
        score += faq.popularity * 0.2
        score += faq.helpful_ratio * 10
        return min(100.0, score)

    def search(self, query: str, category: Optional[str] = None,
               max_results: int = 10) -> list[FAQSearchResult]:
        q = query.lower().strip()
        if not q:
            return []
        entry = SearchLogEntry(query=q)
        self.search_log.append(entry)

        words = self._words(q)
        pool = [f for f in self.faqs.values() if category is None or f.category == category]
        found: dict[str, FAQSearchResult] = {}

        for faq in pool:
            if q in faq.question.lower():
                found[faq.id] = FAQSearchResult(faq, 100.0, "exact", highlight(faq.question, q))

        for faq in pool:
            if faq.id in found:
                continue
            in_answer = q in faq.answer.lower()
            any_word = any(w in faq.question.lower() or w in faq.answer.lower() for w in words)
            if in_answer or any_word:
                found[faq.id] = FAQSearchResult(
                    faq, self.relevance(faq, words, q),
                    "partial" if in_answer else "semantic",
                    highlight(faq.answer, q),
                )

        for faq in pool:
            if faq.id in found:
                continue
            tags = [t.lower() for t in faq.tags]
            if any(q in t or any(w in t for w in words) for t in tags):
                found[faq.id] = FAQSearchResult(faq, 60 + faq.popularity * 0.3, "tag", faq.question)

        ranked = sorted(
            found.values(),
            key=lambda r: r.relevance_score + r.item.popularity * 0.1 + r.item.helpful * 0.5,
            reverse=True,
        )[:max_results]
        entry.result_count = len(ranked)
        logger.debug(f"[faq] q={q!r} results={len(ranked)}")
        return ranked

    def semantic_search(self, query: str, category: Optional[str] = None) -> list[FAQSearchResult]:
        q = query.lower()
        expanded = q
        for key, synonyms in SYNONYMS.items():
            if key in q:
                expanded += " " + " ".join(synonyms)
        return self.search(expanded, category=category)

    def get(self, faq_id: str) -> Optional[FAQItem]:
        return self.faqs.get(faq_id)

    def rate(self, faq_id: str, helpful: bool) -> Optional[FAQItem]:
        faq = self.faqs.get(faq_id)
        if not faq:
            return None
        if helpful:
            faq.helpful += 1
            faq.popularity = min(100, faq.popularity + 1)
        else:
            faq.not_helpful += 1
            faq.popularity = max(0, faq.popularity - 0.5)
        return faq

    def popular(self, limit: int = 5) -> list[FAQItem]:
        return sorted(self.faqs.values(), key=lambda f: f.popularity, reverse=True)[:limit]

    def by_category(self, category: str) -> list[FAQItem]:
        return sorted(
            (f for f in self.faqs.values() if f.category == category),
            key=lambda f: f.popularity, reverse=True,
        )

    def categories(self) -> list[str]:
        return sorted({f.category for f in self.faqs.values()})

    def analytics(self) -> dict:
        terms: dict[str, int] = {}
        for entry in self.search_log:
            for w in entry.query.split():
                if len(w) > 3:
                    terms[w] = terms.get(w, 0) + 1
        top_terms = sorted(terms.items(), key=lambda kv: kv[1], reverse=True)[:10]

        items = list(self.faqs.values())
        category_popularity: dict[str, float] = {}
        for f in items:
            category_popularity[f.category] = category_popularity.get(f.category, 0) + f.popularity

        successful = sum(1 for e in self.search_log if e.result_count > 0)
        return {
            "total_questions": len(items),
            "total_searches": len(self.search_log),
            "top_search_terms": [{"term": t, "count": c} for t, c in top_terms],
            "most_helpful": [f.id for f in sorted(items, key=lambda f: f.helpful_ratio, reverse=True)[:5]],
            "category_popularity": category_popularity,
            "search_success_rate": successful / len(self.search_log) * 100 if self.search_log else 0.0,
        }
