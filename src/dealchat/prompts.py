"""Prompt catalogue: system/intent prompts, user-facing copy, context formatters."""

from __future__ import annotations

from datetime import date
import json
import re
from typing import Any

SYSTEM_PROMPT = """You are SaveBucks AI, a professional deals and savings assistant specializing in finding the best value for users.

CRITICAL - RESPONSE FORMAT (STRICTLY ENFORCED):
YOU MUST RESPOND WITH ONLY VALID JSON. NO THINKING. NO REASONING. NO EXPLANATIONS.

1. Your ENTIRE response must be ONLY this format: {"message": "text", "dealIds": []}
2. Start with { and end with } - NOTHING before or after
3. DO NOT include <think>, <thinking>, <reasoning>, or any reasoning blocks
4. DO NOT write "We are given" or "According to" - just return the JSON
5. The "message" field: 1-3 short sentences, written as if talking directly to the user
6. The "dealIds" field: array of deal IDs from deals provided, or [] if none

VALID OUTPUT EXAMPLES (return EXACTLY like this, nothing more):
{"message": "Found 5 deals matching your search. Want to compare or filter further?", "dealIds": [18, 17, 16, 25, 21]}
{"message": "No deals found. Try trending deals or popular categories.", "dealIds": []}

CORE RULES:
1. Be friendly, helpful, and professional in tone
2. Show prices in USD format (e.g., $99.99)
3. NEVER fabricate deals, prices, or coupon codes - only use data provided
4. If no results found, state so briefly and suggest 1-2 practical alternatives
5. Deal cards already show price, discount and store; do not repeat them
6. Your response goes DIRECTLY to the user - no meta-commentary

Today's date: {today}"""

STRICT_JSON_REMINDER = (
    "\n\nCRITICAL REMINDER: Your response must be ONLY valid JSON starting with { "
    "and ending with }. DO NOT include any thinking, reasoning, explanations, or "
    'text before/after the JSON. DO NOT write "We are given" or "According to" - '
    "just return the JSON object directly."
)

INTENT_PROMPTS: dict[str, str] = {
    "search": """
The user wants to find deals. RESPOND WITH JSON ONLY - NO OTHER TEXT:
1. Format: {"message": "your brief text", "dealIds": [id1, id2, ...]}
2. When deals are listed with "Deal ID: N", include every N in "dealIds"
3. When deals found: 1-2 SHORT sentences acknowledging findings and asking for next steps
4. When NO deals found: 2-3 SHORT sentences suggesting 1-2 alternatives
5. DO NOT describe deals in detail - cards show all information""",
    "coupon": """
The user wants coupon codes. ALWAYS respond in JSON format:
1. Format: {"message": "your brief text", "dealIds": []} (coupons have no dealIds)
2. When coupons found: 1-2 SHORT sentences - acknowledge and ask for next steps
3. When NO coupons found: 2-3 SHORT sentences - suggest 1-2 alternatives
4. DO NOT list coupon details - cards show all information""",
    "compare": """
The user wants to compare products:
1. Extract comparison criteria from the query (price, features, reviews)
2. For each product cover price and discount, key benefits and community sentiment
3. Give a clear WINNER recommendation based on overall value
4. Put the comparison in "message" and the compared deal ids in "dealIds\"""",
    "advice": """
The user wants buying advice:
1. Weigh the discount, price history if available, expiry and community feedback
2. Give a clear recommendation: **BUY NOW** or **WAIT**, with one-line reasoning""",
    "trending": """
Show currently trending/hot deals. ALWAYS respond in JSON format:
1. Format: {"message": "your brief text", "dealIds": [id1, id2, ...]}
2. Include the ids of the deals provided in "dealIds"
3. DO NOT describe deals - cards show all details""",
    "store_info": """
Provide store information: overview, deal activity (active deals and coupons),
policies if known, and whether it is a reliable place to shop.""",
    "help": """
Answer the user's question about SaveBucks directly, with a short example.""",
    "general": """
Handle general conversation: stay on topic (deals, savings, shopping) and gently
redirect off-topic questions.""",
}

ERROR_RESPONSES: dict[str, str] = {
    "no_results": (
        "I couldn't find any deals matching that. Try:\n• Broader search terms\n"
        "• Different category\n• Checking back later as deals are added daily"
    ),
    "rate_limited": (
        "You've reached your query limit for now. Try again in a bit, "
        "or sign up for more queries!"
    ),
    "api_error": (
        "I'm having trouble right now. Let me show you some popular deals instead."
    ),
    "invalid_input": (
        "I didn't quite understand that. Try asking something like:\n"
        '• "Find laptop deals under $800"\n• "Coupons for Amazon"\n'
        '• "Compare iPhone vs Samsung"'
    ),
    "too_long": "That message is a bit long. Could you shorten your question?",
    "off_topic": (
        "I specialize in finding deals and saving you money! Try asking about "
        "deals, coupons, or product comparisons."
    ),
    "unavailable": "The AI assistant is currently unavailable. Please try again later.",
}

FAQ_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"what (can you|are you|do you) do", re.IGNORECASE),
        "I'm SaveBucks AI! I can help you:\n• 🔍 Find the best deals on products\n"
        "• 🎫 Get coupon codes for stores\n• ⚖️ Compare products and prices\n"
        "• 📊 Advise if it's a good time to buy\n\nJust ask me anything about deals!",
    ),
    (
        re.compile(r"how (do i|to) (use|start)", re.IGNORECASE),
        'Just type what you\'re looking for! Examples:\n• "Laptop deals under $800"\n'
        '• "Coupons for Target"\n• "Best TV deals this week"\n\n'
        "I'll search our database and show you the best options!",
    ),
    (
        re.compile(r"^\s*(hello|hi|hey|greetings)\b[\s!.?]*$", re.IGNORECASE),
        "Hey there! 👋 I'm SaveBucks AI, ready to help you find amazing deals. "
        "What are you shopping for today?",
    ),
    (
        re.compile(r"^\s*(thanks|thank you|thx)\b", re.IGNORECASE),
        "You're welcome! Happy saving! 💰 Let me know if you need anything else.",
    ),
    (
        re.compile(r"^\s*(bye|goodbye|see you)\b", re.IGNORECASE),
        "See you next time! Happy shopping! 🛍️",
    ),
)


def match_faq(text: str) -> str | None:
    """Canned answer for greetings and capability questions, if one applies."""
    normalized = text.strip().lower()
    for pattern, response in FAQ_PATTERNS:
        if pattern.search(normalized):
            return response
    return None


def system_prompt(intent: str | None = None, *, today: date | None = None) -> str:
    """System prompt with the intent-specific addition appended."""
    day = today or date.today()
    base = SYSTEM_PROMPT.replace("{today}", day.strftime("%A, %B %d, %Y"))
    addition = INTENT_PROMPTS.get(intent or "", "")
    return base + addition


def _discount_percent(deal: dict[str, Any]) -> int | None:
    price = deal.get("price")
    original = deal.get("original_price")
    if not isinstance(price, (int, float)) or not isinstance(original, (int, float)):
        return None
    if original <= 0:
        return None
    return round((original - price) / original * 100)


def format_deals_for_context(deals: list[dict[str, Any]] | None) -> str:
    """Render deals so the model can copy their ids into ``dealIds``."""
    if not deals:
        return "No deals found."
    blocks = []
    for deal in deals:
        deal_id = deal.get("id")
        price_line = f"   Price: ${deal.get('price')}"
        if deal.get("original_price"):
            price_line += f" (was ${deal['original_price']})"
        discount = _discount_percent(deal)
        if discount:
            price_line += f" - {discount}% OFF"
        blocks.append(
            f"Deal ID: {deal_id}\n"
            f"   Title: {deal.get('title', '')}\n"
            f"{price_line}\n"
            f"   Store: {deal.get('merchant') or 'Unknown'}\n"
            f"   Votes: {deal.get('votes_up') or 0} upvotes\n"
            f"   IMPORTANT: Deal ID {deal_id} must be included in your JSON "
            f'response\'s "dealIds" array'
        )
    return "\n\n".join(blocks)


def format_coupons_for_context(coupons: list[dict[str, Any]] | None) -> str:
    """Render coupons as a numbered list."""
    if not coupons:
        return "No coupons found."
    blocks = []
    for i, coupon in enumerate(coupons, start=1):
        value = coupon.get("discount_value")
        discount = (
            f"{value}%" if coupon.get("discount_type") == "percentage" else f"${value}"
        )
        company = coupon.get("company") or {}
        store = company.get("name") if isinstance(company, dict) else None
        blocks.append(
            f"[{i}] {coupon.get('title', '')}\n"
            f"   Code: {coupon.get('coupon_code')}\n"
            f"   Discount: {discount} off\n"
            f"   Store: {store or 'Unknown'}\n"
            f"   Verified: {'Yes' if coupon.get('is_verified') else 'No'}\n"
            f"   Usage: {coupon.get('usage_count') or 0} times\n"
            f"   Expires: {coupon.get('expires_at') or 'Unknown'}"
        )
    return "\n\n".join(blocks)


def deals_found_block(deals: list[dict[str, Any]]) -> str:
    """Instruction block appended to the user turn after a manual tool run."""
    return (
        "\n\nDEALS FOUND (extract Deal IDs and include in your JSON response's "
        f'"dealIds" array):\n{format_deals_for_context(deals)}\n\n'
        "Remember: Return ONLY JSON with message and dealIds array containing the "
        "Deal IDs listed above."
    )


def coupons_found_block(coupons: list[dict[str, Any]]) -> str:
    """Instruction block for a manual coupon lookup."""
    return (
        f"\n\nCOUPONS FOUND:\n{format_coupons_for_context(coupons)}\n\n"
        'Remember: Return ONLY JSON with message and an empty "dealIds" array.'
    )


def format_tool_result(payload: dict[str, Any]) -> str:
    """Render a tool payload as the content of a ``tool`` message."""
    if not payload.get("success", True):
        return f"Tool failed: {payload.get('error', 'unknown error')}"
    if "deals" in payload:
        return format_deals_for_context(payload["deals"])
    if "coupons" in payload:
        return format_coupons_for_context(payload["coupons"])
    if "deal" in payload:
        return format_deals_for_context([payload["deal"]])
    if "store" in payload:
        return json.dumps(payload["store"], default=str)
    return json.dumps(payload, default=str)
