"""Pydantic models for tenant configuration.

A tenant configuration bundles everything the turn core reads at decision
time: booking flow definitions, scenario cards, tier thresholds, the daily
LLM budget, confirmation-policy overrides and the token lists used by the
slot validators. It is authored elsewhere and is read-only here.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, model_validator


class SlotType(str, Enum):
    FREE_TEXT = "free_text"
    PHONE = "phone"
    ADDRESS = "address"
    TEMPORAL = "temporal"   # time of day, clock time, relative day or urgency
    NUMERIC = "numeric"


class ConfirmationPolicy(str, Enum):
    NEVER = "never"
    IF_MISSING = "if_missing"   # confirm only values the caller did not state in this flow
    ALWAYS = "always"


CONFIRM_STEP = "confirm"


class Slot(BaseModel):
    """One named field in a booking flow."""

    name: str
    label: str = ""
    type_class: SlotType = SlotType.FREE_TEXT
    required: bool = True
    confirmation: ConfirmationPolicy = ConfirmationPolicy.IF_MISSING
    prompt: str = ""
    reprompt: str = ""
    min_length: int = 2
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.label or self.name.replace("_", " ")

    def ask(self) -> str:
        return self.prompt or f"What is your {self.display_name}?"

    def ask_again(self) -> str:
        return self.reprompt or f"Sorry, I didn't catch that. {self.ask()}"


class BookingFlowDefinition(BaseModel):
    """Ordered slots plus the confirmation and completion templates."""

    flow_id: str
    slots: list[Slot] = []
    confirmation_template: str = "Let me confirm: {summary}. Is that correct?"
    completion_template: str = "You're all set. We'll see you {time}."
    correction_prompt: str = "No problem. Which detail should I change?"
    max_step_attempts: int = 3       # asks of one step before handing off
    max_rewinds: int = 4             # sanity-sweep rewinds per call
    max_confirmation_rewinds: int = 2

    @model_validator(mode="after")
    def _unique_slot_names(self) -> "BookingFlowDefinition":
        names = [s.name for s in self.slots]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate slot names in flow {self.flow_id}")
        if CONFIRM_STEP in names:
            raise ValueError(f"'{CONFIRM_STEP}' is reserved and cannot be a slot name")
        return self

    def slot(self, name: str) -> Optional[Slot]:
        for s in self.slots:
            if s.name == name:
                return s
        return None


class CardResponse(BaseModel):
    id: str
    text: str


class ScenarioCard(BaseModel):
    """A matchable unit consumed by the response router."""

    card_id: str
    description: str = ""
    triggers: list[str] = []
    negative_triggers: list[str] = []
    regex_triggers: list[str] = []
    reference_phrases: list[str] = []     # semantic tier; falls back to triggers
    min_confidence: float = 0.45
    priority: int = 0
    responses: list[CardResponse] = []
    accepts_scheduling: bool = False      # caller agreed to book
    escalates: bool = False               # caller asked for a human


class TierThresholds(BaseModel):
    deterministic: float = 0.80
    semantic: float = 0.60


DEFAULT_STREET_SUFFIXES = [
    "street", "st", "avenue", "ave", "road", "rd", "drive", "dr", "lane", "ln",
    "boulevard", "blvd", "court", "ct", "circle", "cir", "way", "place", "pl",
    "parkway", "pkwy", "highway", "hwy", "terrace", "trail", "apt", "suite",
]

DEFAULT_URGENCY_PHRASES = [
    "asap", "as soon as possible", "as early as possible", "as soon as you can",
    "right away", "immediately", "urgent", "emergency", "first available",
    "earliest", "soonest", "right now", "now", "whenever", "anytime", "any time",
]

DEFAULT_TIME_OF_DAY_PHRASES = [
    "morning", "afternoon", "evening", "tonight", "night", "noon", "midday",
    "lunch", "after work", "before noon", "after lunch", "end of day",
]

DEFAULT_RELATIVE_DAY_PHRASES = [
    "today", "tomorrow", "day after tomorrow", "this week", "next week",
    "weekend", "monday", "tuesday", "wednesday", "thursday", "friday",
    "saturday", "sunday",
]

DEFAULT_AFFIRMATIONS = [
    "yes", "yeah", "yep", "yup", "correct", "that's right", "that is right",
    "right", "sure", "sounds good", "ok", "okay", "perfect", "exactly",
]

DEFAULT_DENIALS = [
    "no", "nope", "nah", "wrong", "incorrect", "not right", "not correct",
    "change", "that's not",
]

DEFAULT_LEAD_INS = [
    "my name is", "this is", "i'm", "i am", "it's", "its", "it is",
    "my address is", "the address is", "my number is", "my phone number is",
    "you can reach me at", "call me at", "how about", "maybe", "let's say",
    "make it", "make that", "change it to", "change that to", "switch it to",
    "let's do", "can we do", "can you do", "i'd prefer", "i prefer",
]


class ValidationVocabulary(BaseModel):
    """Token lists and limits behind the slot type predicates."""

    street_suffixes: list[str] = DEFAULT_STREET_SUFFIXES
    urgency_phrases: list[str] = DEFAULT_URGENCY_PHRASES
    time_of_day_phrases: list[str] = DEFAULT_TIME_OF_DAY_PHRASES
    relative_day_phrases: list[str] = DEFAULT_RELATIVE_DAY_PHRASES
    affirmations: list[str] = DEFAULT_AFFIRMATIONS
    denials: list[str] = DEFAULT_DENIALS
    lead_ins: list[str] = DEFAULT_LEAD_INS
    max_bare_number_length: int = 2
    min_address_length: int = 5
    phone_digits: int = 10


DEFAULT_FILLER_WORDS = [
    "um", "uh", "er", "ah", "hmm", "like", "you know", "i mean", "basically",
    "actually", "so", "well", "okay", "alright", "please", "hey", "hi",
    "hello", "just",
]


class NormalizationConfig(BaseModel):
    filler_words: list[str] = DEFAULT_FILLER_WORDS
    synonyms: dict[str, list[str]] = {}   # canonical term → aliases


class ReplyTemplates(BaseModel):
    greeting: str = "Thanks for calling. How can I help you today?"
    default_reply: str = "I'm sorry, could you say that another way?"
    llm_safe_reply: str = "Let me make sure I get you the right answer. Could you tell me a bit more?"
    error_reply: str = "I'm sorry, I ran into a problem on my end. Could you repeat that?"
    transfer_reply: str = "Let me get you to a person who can help. Please hold."
    budget_exhausted_reply: str = "Let me connect you with someone on our team who can help."
    terminated_reply: str = "Thanks for calling. Goodbye!"
    filler: str = "One moment."
    persona: str = "You are a friendly, concise receptionist for a home-services company."


DEFAULT_ESCALATION_PHRASES = [
    "speak to a person", "talk to a person", "speak to a human", "talk to a human",
    "real person", "representative", "operator", "speak to someone",
    "talk to someone", "speak with someone", "customer service agent",
]


class TenantConfig(BaseModel):
    """A complete tenant configuration at one version."""

    tenant_id: str
    version: int = 1
    agent_enabled: bool = True
    booking_enabled: bool = True

    booking_flows: list[BookingFlowDefinition] = []
    default_flow_id: str = ""
    scenario_cards: list[ScenarioCard] = []
    thresholds: TierThresholds = TierThresholds()

    llm_fallback_enabled: bool = False
    llm_slot_extraction_enabled: bool = False
    daily_llm_budget_usd: float = 0.0

    confirmation_overrides: dict[str, ConfirmationPolicy] = {}   # slot name → policy
    vocabulary: ValidationVocabulary = ValidationVocabulary()
    normalization: NormalizationConfig = NormalizationConfig()
    replies: ReplyTemplates = ReplyTemplates()
    escalation_phrases: list[str] = DEFAULT_ESCALATION_PHRASES

    max_consecutive_faults: int = 2
    max_speaker_collisions: int = 2

    def flow(self, flow_id: str | None = None) -> Optional[BookingFlowDefinition]:
        """Look up a flow by ID, falling back to the default flow."""
        wanted = flow_id or self.default_flow_id
        for f in self.booking_flows:
            if f.flow_id == wanted:
                return f
        if not flow_id and self.booking_flows:
            return self.booking_flows[0]
        return None

    def confirmation_policy(self, slot: Slot) -> ConfirmationPolicy:
        return self.confirmation_overrides.get(slot.name, slot.confirmation)

    def card(self, card_id: str) -> Optional[ScenarioCard]:
        for c in self.scenario_cards:
            if c.card_id == card_id:
                return c
        return None
