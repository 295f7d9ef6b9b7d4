"""
FusionForge Storefront — Support Chat Assistant

Responsibilities:
  1. Chat sessions and message history (in-process)
  2. Keyword auto-responses when no model is available
  3. Store-aware system prompt (builds, components, low stock, contact info)
  4. LLM call to an OpenAI-compatible chat-completions endpoint
  5. Escalation analysis for human hand-off
  6. Conversation summaries for admins
"""
from __future__ import annotations
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Mapping, Optional
from uuid import uuid4

import httpx
from pydantic import BaseModel, Field

from config import Settings
from models import format_inr, utcnow
from repository import StoreRepository

logger = logging.getLogger(__name__)

FALLBACK_REPLY = (
    "I'm experiencing technical difficulties right now. Let me connect you with "
    "our support team who can assist you immediately."
)
HISTORY_TURNS = 10
ESCALATION_LOG_SIZE = 500


class SessionStatus(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    CLOSED = "closed"
    TRANSFERRED = "transferred"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SenderType(str, Enum):
    USER = "user"
    ADMIN = "admin"
    BOT = "bot"


class ChatMessage(BaseModel):
    id: str = Field(default_factory=lambda: f"msg_{uuid4().hex[:12]}")
    sender_id: str
    sender_type: SenderType
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatSession(BaseModel):
    id: str = Field(default_factory=lambda: f"chat_{uuid4().hex[:16]}")
    user_id: str
    user_email: str = ""
    user_name: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    priority: Priority = Priority.MEDIUM
    category: str = "general"
    messages: list[ChatMessage] = Field(default_factory=list)
    escalation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)


@dataclass
class EscalationDecision:
    should_escalate: bool
    reason: str
    urgency: Priority


@dataclass
class AutoResponse:
    triggers: list[str]
    response: str
    escalate: bool
    category: str


@dataclass
class AssistantReply:
    response: str
    escalation: EscalationDecision
    used_fallback: bool = False


AUTO_RESPONSES = [
    AutoResponse(
        ["price", "cost", "expensive", "cheap", "budget"],
        "I understand you have questions about pricing. Our PC builds start from ₹15,000 and go up "
        "to ₹1,50,000 depending on your performance needs. Would you like me to recommend builds "
        "within your budget range?",
        False, "sales"),
    AutoResponse(
        ["compatibility", "compatible", "work together", "upgrade"],
        "Our PC configurator automatically checks component compatibility and alerts you to any "
        "issues. What components are you considering?",
        False, "technical"),
    AutoResponse(
        ["delivery", "shipping", "when will", "timeline"],
        "Most PC builds are assembled and shipped within 3-5 business days. Custom configurations "
        "may take 5-7 days.",
        False, "support"),
    AutoResponse(
        ["warranty", "guarantee", "return", "defect"],
        "Components carry manufacturer warranties (1-3 years) and we provide a 1-year assembly "
        "warranty. Would you like details for a specific build?",
        True, "support"),
    AutoResponse(
        ["custom", "modify", "change component", "different"],
        "We specialize in custom PC builds. What's your intended use case and budget?",
        False, "sales"),
    AutoResponse(
        ["payment", "razorpay", "card", "emi", "installment"],
        "We accept UPI, Net Banking, Credit/Debit Cards and EMI through Razorpay. EMI is available "
        "for orders above ₹10,000.",
        False, "billing"),
    AutoResponse(
        ["gaming", "fps", "performance", "rtx", "graphics"],
        "I can help you choose the right GPU and CPU combination. What games do you plan to play "
        "and at what resolution?",
        False, "technical"),
    AutoResponse(
        ["help", "support", "problem", "issue", "not working"],
        "I'm here to help! Please describe the issue you're experiencing. For complex technical "
        "issues, I can connect you with our technical team.",
        True, "support"),
]

ESCALATION_KEYWORDS = [
    "speak to manager", "human agent", "not working", "broken", "defective",
    "refund", "cancel order", "complaint", "dissatisfied", "unhappy",
    "delivery date", "when will it arrive", "track order", "order status",
    "warranty claim", "technical issue", "not booting", "blue screen",
    "overheating", "noise", "performance issue",
]
URGENT_KEYWORDS = [
    "urgent", "emergency", "immediately", "asap", "right now",
    "critical", "important", "deadline", "today",
]
TECHNICAL_KEYWORDS = ["compatibility", "upgrade", "installation", "setup", "configuration"]
BOT_HANDOFF_PHRASES = ["connect you", "support team", "human agent"]


def find_auto_response(message: str) -> Optional[AutoResponse]:
    lower = message.lower()
    for auto in AUTO_RESPONSES:
        if any(t in lower for t in auto.triggers):
            return auto
    return None


def analyze_escalation(user_message: str, reply: str) -> EscalationDecision:
    message = user_message.lower()
    reply_lower = reply.lower()
    keyword_hit = any(k in message for k in ESCALATION_KEYWORDS)
    urgent = any(k in message for k in URGENT_KEYWORDS)
    bot_handoff = any(p in reply_lower for p in BOT_HANDOFF_PHRASES)

    if keyword_hit or bot_handoff:
        return EscalationDecision(
            should_escalate=True,
            reason=("Customer request requires human assistance" if keyword_hit
                    else "AI unable to resolve query"),
            urgency=Priority.URGENT if urgent else Priority.HIGH,
        )
    if any(k in message for k in TECHNICAL_KEYWORDS) and len(message) > 100:
        return EscalationDecision(True, "Complex technical query may need expert assistance",
                                  Priority.MEDIUM)
    return EscalationDecision(False, "AI can handle this query", Priority.LOW)


class LLMError(Exception):
    pass


class ChatAssistant:
    def __init__(self, settings: Settings, repo: StoreRepository,
                 client: Optional[httpx.AsyncClient] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.repo = repo
        self._client = client
        self._clock = clock
        self.sessions: dict[str, ChatSession] = {}
        self.history: dict[str, list[dict[str, str]]] = {}
        self._history_seen: dict[str, datetime] = {}
        self.escalations: deque[dict[str, Any]] = deque(maxlen=ESCALATION_LOG_SIZE)

    @property
    def configured(self) -> bool:
        return bool(self.settings.llm_api_key)

    # ── Prompt ───────────────────────────────────────────────────────────

    async def build_system_prompt(self, business: Mapping[str, Any]) -> str:
        builds = await self.repo.list_builds()
        components = await self.repo.list_components()
        low = await self.repo.get_low_stock_items()

        builds_ctx = "\n".join(
            f"{b.name}: ₹{format_inr(b.total_price or b.base_price)} - "
            f"{b.description or 'Custom PC build'} (Stock: {b.stock_quantity})"
            for b in builds
        ) or "No builds listed."
        components_ctx = "\n".join(
            f"{c.name}: {c.specification} - ₹{c.price} ({c.type})" for c in components[:20]
        )
        low_ctx = ""
        if low.builds or low.components:
            names = [f"- {b.name}: Only {b.stock_quantity} left" for b in low.builds]
            names += [f"- {c.name}: Only {c.stock_quantity} left" for c in low.components]
            low_ctx = "\nLOW STOCK ALERTS:\n" + "\n".join(names)

        return (
            f"You are the {business.get('company_name', 'FusionForge PCs')} AI Assistant, an expert "
            "in custom PC building and computer hardware for a PC builder in India.\n\n"
            "CONTACT:\n"
            f"- Email: {business.get('business_email', '')}\n"
            f"- Phone: {business.get('business_phone', '')}\n"
            f"- Hours: {business.get('business_hours', '')}\n\n"
            f"AVAILABLE PC BUILDS ({len(builds)}):\n{builds_ctx}\n\n"
            f"KEY COMPONENTS ({len(components)} total):\n{components_ctx}{low_ctx}\n\n"
            "PAYMENT & DELIVERY:\n"
            "- UPI, Net Banking, Credit/Debit Cards, EMI via Razorpay (EMI above ₹10,000)\n"
            "- Delivery 3-5 business days standard, 5-7 for custom builds\n"
            "- 1 year assembly warranty plus component warranties\n\n"
            "GUIDELINES: be concise (2-3 sentences), quote prices in ₹, mention stock when "
            "relevant. Offer to connect the customer with the support team for order changes, "
            "refunds, warranty claims, hardware failures or complaints."
        )

    # ── LLM ──────────────────────────────────────────────────────────────

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.settings.llm_api_key}",
            "Content-Type": "application/json",
        }
        if self._client is not None:
            return await self._client.post(self.settings.llm_api_url, json=payload, headers=headers)
        async with httpx.AsyncClient(timeout=self.settings.llm_timeout_seconds) as client:
            return await client.post(self.settings.llm_api_url, json=payload, headers=headers)

    async def call_llm(self, messages: list[dict[str, str]]) -> str:
        payload = {
            "model": self.settings.llm_model,
            "messages": messages,
            "temperature": self.settings.llm_temperature,
            "max_tokens": self.settings.llm_max_tokens,
            "stream": False,
        }
        response = await self._post(payload)
        if not response.is_success:
            raise LLMError(f"LLM API error: {response.status_code}")
        data = response.json()

        text = ""
        choices = data.get("choices") or []
        if choices:
            first = choices[0]
            text = (first.get("message") or {}).get("content") or first.get("text") or ""
        elif data.get("generated_text"):
            text = data["generated_text"]
        elif data.get("text"):
            text = data["text"]
        if not text.strip():
            raise LLMError("Empty response from LLM API")
        return text.strip()

    async def respond(self, session_id: str, message: str,
                      business: Mapping[str, Any]) -> AssistantReply:
        """Model reply for `message`, with escalation advice. Never raises on model failure."""
        if not self.configured:
            logger.warning("[chat] LLM not configured, using fallback reply")
            return self._fallback()

        self.purge_idle()
        history = self.history.get(session_id, [])
        try:
            system_prompt = await self.build_system_prompt(business)
            messages = (
                [{"role": "system", "content": system_prompt}]
                + history
                + [{"role": "user", "content": message}]
            )
            reply = await self.call_llm(messages)
        except (httpx.HTTPError, LLMError, ValueError) as e:
            logger.error(f"[chat] session={session_id} LLM failure: {e}")
            return self._fallback()

        history = self.history.setdefault(session_id, [])
        history.extend([
            {"role": "user", "content": message},
            {"role": "assistant", "content": reply},
        ])
        del history[:-HISTORY_TURNS]
        self._history_seen[session_id] = self._clock()
        escalation = analyze_escalation(message, reply)
        logger.info(
            f"[chat] session={session_id} escalate={escalation.should_escalate} "
            f"urgency={escalation.urgency.value}")
        return AssistantReply(reply, escalation)

    @staticmethod
    def _fallback() -> AssistantReply:
        return AssistantReply(
            FALLBACK_REPLY,
            EscalationDecision(True, "AI service unavailable", Priority.MEDIUM),
            used_fallback=True,
        )

    # ── Sessions ─────────────────────────────────────────────────────────

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(hours=self.settings.chat_session_idle_hours)

    def purge_idle(self) -> int:
        cutoff = self._clock() - self.idle_timeout
        idle = [sid for sid, s in self.sessions.items() if s.last_activity < cutoff]
        for sid in idle:
            del self.sessions[sid]
            self.history.pop(sid, None)
            self._history_seen.pop(sid, None)
        stale = [sid for sid, seen in self._history_seen.items() if seen < cutoff]
        for sid in stale:
            del self._history_seen[sid]
            self.history.pop(sid, None)
        if idle or stale:
            logger.info(f"[chat] purged {len(idle)} idle session(s) and {len(stale)} "
                        f"history thread(s), active={len(self.sessions)}")
        return len(idle)

    def start_session(self, user_id: str, user_email: str = "", user_name: str = "") -> ChatSession:
        self.purge_idle()
        now = self._clock()
        session = ChatSession(user_id=user_id, user_email=user_email, user_name=user_name,
                              created_at=now, last_activity=now)
        self.sessions[session.id] = session
        return session

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        self.purge_idle()
        return self.sessions.get(session_id)

    async def send_message(self, session_id: str, sender_id: str, text: str,
                           business: Mapping[str, Any],
                           sender_type: SenderType = SenderType.USER) -> list[ChatMessage]:
        """Append a message; user messages get a bot reply. Returns the new messages."""
        session = self.sessions.get(session_id)
        if session is None:
            raise KeyError(session_id)

        added = [ChatMessage(sender_id=sender_id, sender_type=sender_type, message=text)]
        session.messages.append(added[0])
        session.last_activity = self._clock()
        if sender_type != SenderType.USER:
            return added

        auto = find_auto_response(text)
        if auto and session.category == "general":
            session.category = auto.category

        if self.configured:
            reply = await self.respond(session_id, text, business)
            escalation = reply.escalation
            bot_text = reply.response
        elif auto:
            bot_text = auto.response
            escalation = EscalationDecision(
                auto.escalate,
                "Customer needs assistance" if auto.escalate else "Auto response",
                Priority.HIGH if auto.escalate else Priority.LOW,
            )
        else:
            reply = self._fallback()
            bot_text, escalation = reply.response, reply.escalation

        bot = ChatMessage(
            sender_id="ai_assistant", sender_type=SenderType.BOT, message=bot_text,
            metadata={
                "needs_escalation": escalation.should_escalate,
                "escalation_reason": escalation.reason,
                "urgency": escalation.urgency.value,
            },
        )
        session.messages.append(bot)
        added.append(bot)
        if escalation.should_escalate:
            session.status = SessionStatus.WAITING
            session.priority = escalation.urgency
            self.record_escalation(session_id, escalation.reason)
        return added

    def close_session(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        if not session:
            return False
        session.status = SessionStatus.CLOSED
        self.history.pop(session_id, None)
        self._history_seen.pop(session_id, None)
        return True

    def record_escalation(self, session_id: str, reason: str,
                          timestamp: Optional[str] = None) -> dict[str, Any]:
        entry = {
            "session_id": session_id,
            "reason": reason,
            "timestamp": timestamp or utcnow().isoformat(),
        }
        session = self.sessions.get(session_id)
        if session:
            session.escalation_reason = reason
        self.escalations.append(entry)
        logger.info(f"[chat] escalation session={session_id} reason={reason!r}")
        return entry

    def summary(self, session_id: str) -> str:
        history = self.history.get(session_id)
        if not history:
            session = self.sessions.get(session_id)
            if session and session.messages:
                history = [
                    {"role": "user" if m.sender_type == SenderType.USER else "assistant",
                     "content": m.message}
                    for m in session.messages
                ]
        if not history:
            return "No conversation history available."
        lines = [
            f"{'Customer' if m['role'] == 'user' else 'AI'}: {m['content']}" for m in history
        ]
        return "Conversation Summary:\n" + "\n".join(lines)
