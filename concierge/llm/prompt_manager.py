"""Prompt templates for intent classification and customer answers"""

from typing import List, Optional
import structlog
from jinja2 import Template

from ..rag.models import BusinessFacts, ContextBundle, ConversationTurn
from ..rules.models import ResponseDirectives
from .models import ChatMessage

logger = structlog.get_logger(__name__)

INTENT_SYSTEM_MESSAGE = (
    "You are an expert at classifying restaurant customer queries. "
    "Analyze the query and determine the most likely intent."
)

INTENT_DESCRIPTIONS = {
    "MENU_INQUIRY": "Questions about food items, dishes, ingredients, recommendations",
    "HOURS_POLICY": "Questions about operating hours, policies, procedures",
    "PRICING_QUESTION": "Questions about prices, costs, deals, discounts",
    "DIETARY_RESTRICTIONS": "Questions about allergies, dietary needs, special diets",
    "LOCATION_INFO": "Questions about address, directions, delivery areas",
    "GENERAL_CHAT": "Greetings, small talk, general conversation",
    "COMPLAINT_FEEDBACK": "Complaints, issues, feedback, problems",
    "UNKNOWN": "Unclear or ambiguous queries",
}

INTENT_GUIDANCE = {
    "MENU_INQUIRY": "Describe the relevant dishes and mention prices when you know them.",
    "HOURS_POLICY": "State hours and policies exactly as listed; do not guess.",
    "PRICING_QUESTION": "Quote prices from the provided information only and mention current specials.",
    "DIETARY_RESTRICTIONS": "Be precise about allergens and suggest the customer confirm with staff for severe allergies.",
    "LOCATION_INFO": "Give the address and any delivery details that are listed.",
    "GENERAL_CHAT": "Be warm and brief, then offer help.",
    "COMPLAINT_FEEDBACK": "Apologize sincerely, acknowledge the issue and offer a way to resolve it.",
}


class PromptManager:
    """Jinja templates for every prompt the engine sends"""

    def __init__(self):
        self.templates = {}
        self.load_templates()

    def load_templates(self):
        self.templates["intent_classification"] = Template("""
Analyze this restaurant customer query and classify it into one of these intents:

QUERY: "{{ query }}"

INTENT CATEGORIES:
{% for name, description in intents.items() %}
- {{ name }}: {{ description }}
{% endfor %}

Respond in this exact JSON format:
{
  "intent": "INTENT_NAME",
  "confidence": 0.95,
  "reasoning": "Brief explanation of why this intent was chosen"
}
""")

        self.templates["customer_service"] = Template("""
{% if business.custom_instructions %}{{ business.custom_instructions }}{% else %}You are a helpful customer service assistant for {{ business.name }}, a {{ business.business_type }}.
Answer customer questions accurately using only the information provided below. If the answer is not in the information, say so and suggest contacting the business directly.{% endif %}

Business Information:
- Name: {{ business.name }}
- Type: {{ business.business_type }}
{% if business.description %}- Description: {{ business.description }}
{% endif %}{% if business.phone %}- Phone: {{ business.phone }}
{% endif %}{% if business.website %}- Website: {{ business.website }}
{% endif %}{% if business.location %}- Location: {{ business.location }}
{% endif %}{% if business.hours %}- Hours:
{% for day, hours in business.hours.items() %}  - {{ day }}: {{ hours }}
{% endfor %}{% endif %}{% if business.is_open is not none %}- Currently: {{ "open" if business.is_open else "closed" }}
{% endif %}{% if business.specials %}- Current specials: {{ business.specials | join("; ") }}
{% endif %}{% if business.policies %}- Policies: {{ business.policies | join("; ") }}
{% endif %}
{% if context %}
Relevant information:
{{ context }}
{% endif %}
Detected intent: {{ intent }}
{% if guidance %}{{ guidance }}
{% endif %}
Response guidelines:
- Tone: {{ directives.tone or "professional" }}
- Style: {{ directives.style or "conversational" }}
- Length: {{ directives.length or "moderate" }}
{% if directives.template %}- Follow this response template: {{ directives.template }}
{% endif %}{% for modification in directives.content_modifications %}- Content instruction: {{ modification.instruction or modification }}
{% endfor %}{% if directives.escalate %}- Tell the customer their request is being passed to a staff member{% if directives.escalation_reason %} ({{ directives.escalation_reason }}){% endif %}.
{% endif %}{% if directives.disclaimers %}- End the answer with: {{ directives.disclaimers | join(" ") }}
{% endif %}
Never invent menu items, prices, hours or policies.
""")

        logger.info("Prompt templates loaded", count=len(self.templates))

    def get_intent_prompt(self, query: str) -> List[ChatMessage]:
        """System and user messages for model-based intent classification"""
        user_prompt = self.templates["intent_classification"].render(
            query=query,
            intents=INTENT_DESCRIPTIONS,
        )
        return [
            ChatMessage(role="system", content=INTENT_SYSTEM_MESSAGE),
            ChatMessage(role="user", content=user_prompt.strip()),
        ]

    def get_system_prompt(
        self,
        business: BusinessFacts,
        context: Optional[ContextBundle] = None,
        intent: str = "UNKNOWN",
        directives: Optional[ResponseDirectives] = None,
    ) -> str:
        template = self.templates["customer_service"]
        return template.render(
            business=business,
            context=context.to_prompt_context() if context else "",
            intent=intent,
            guidance=INTENT_GUIDANCE.get(intent),
            directives=directives or ResponseDirectives(),
        ).strip()

    def build_messages(
        self,
        system_prompt: str,
        history: List[ConversationTurn],
        query: str,
    ) -> List[ChatMessage]:
        """System prompt, prior turns oldest first, then the current query"""
        messages = [ChatMessage(role="system", content=system_prompt)]
        for turn in history:
            if turn.role in ("user", "assistant"):
                messages.append(ChatMessage(role=turn.role, content=turn.content))
        messages.append(ChatMessage(role="user", content=query))
        return messages
