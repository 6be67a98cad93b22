"""Canned answers used when generation is unavailable, and follow-up suggestions"""

from typing import List

FALLBACK_RESPONSES = {
    "MENU_INQUIRY": ("I'd be happy to help you with our menu at {name}. However, I'm currently experiencing "
                     "technical difficulties. Please contact us directly for the most up-to-date information."),
    "HOURS_POLICY": ("I can help you with our hours and policies at {name}. Due to a technical issue, "
                     "please call us directly for current information."),
    "PRICING_QUESTION": ("I'd love to help you with pricing information for {name}. Please contact us "
                         "directly for the most accurate and current pricing."),
    "DIETARY_RESTRICTIONS": ("I can help you with dietary options at {name}. Please contact us directly "
                             "to discuss your specific dietary needs."),
    "LOCATION_INFO": ("I can help you with location information for {name}. Please contact us directly "
                      "for directions and location details."),
    "GENERAL_CHAT": ("Thank you for contacting {name}! I'm currently experiencing technical difficulties. "
                     "Please feel free to reach out to us directly."),
    "COMPLAINT_FEEDBACK": ("I appreciate you reaching out to {name}. Please contact us directly so we can "
                           "address your concerns properly."),
    "UNKNOWN": ("Thank you for contacting {name}. I'm currently experiencing technical difficulties. "
                "Please contact us directly for assistance."),
}

BLOCKED_RESPONSE = ("I'm sorry, but I can't help with that request here. "
                    "Please contact us directly and a member of our team will assist you.")

SUGGESTIONS = {
    "MENU_INQUIRY": [
        "What are your most popular items?",
        "Do you have any specials today?",
        "What ingredients do you use?",
    ],
    "HOURS_POLICY": [
        "What are your delivery hours?",
        "Do you offer pickup?",
        "What's your cancellation policy?",
    ],
    "PRICING_QUESTION": [
        "Are there any deals available?",
        "What's included in the price?",
        "Do you offer group discounts?",
    ],
    "DIETARY_RESTRICTIONS": [
        "What vegan options do you have?",
        "Are your items gluten-free?",
        "Do you accommodate allergies?",
    ],
    "LOCATION_INFO": [
        "What's your delivery radius?",
        "How long does delivery take?",
        "Do you have multiple locations?",
    ],
}

DEFAULT_SUGGESTIONS = [
    "Tell me more about your menu",
    "What are your hours?",
    "How can I place an order?",
]


def fallback_response(intent: str, business_name: str) -> str:
    template = FALLBACK_RESPONSES.get(intent, FALLBACK_RESPONSES["UNKNOWN"])
    return template.format(name=business_name or "our business")


def suggestions_for(intent: str) -> List[str]:
    return list(SUGGESTIONS.get(intent, DEFAULT_SUGGESTIONS))
