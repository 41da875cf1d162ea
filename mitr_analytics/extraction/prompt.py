import json

SYSTEM_PROMPT = (
    "You extract structured business analytics from conversations between Indian MSME owners "
    "and a government-scheme advisory assistant. Return valid JSON only."
)

OUTPUT_SCHEMA = {
    "location": "city or district name in English, or null",
    "industry": "business sector in English, or null",
    "businessSize": "Micro | Small | Medium, or null",
    "annualTurnover": "turnover exactly as stated (e.g. '5 lakh', '2 crore'), or null",
    "employeeCount": "integer or phrase (e.g. '5-10 workers'), or null",
    "schemeInterests": [{"schemeName": "scheme name", "interestLevel": "mentioned | inquired | detailed"}],
    "confidence": "number between 0 and 1",
    "extractionNotes": "short free-text notes about ambiguities",
    "detectedLanguages": ["english | hindi | hinglish | other Indian language names"],
}

_GUIDELINES = """Guidelines:
- Users write in English, Hindi (Devanagari), Hinglish (Hindi in Latin script) or other Indian languages.
  Translate every value to English; keep place names recognizable (e.g. "मुंबई" -> "Mumbai").
- Only extract what the USER states about their own business. Ignore facts the assistant suggests.
- Money: keep Indian units as written ("5 lakh", "2.5 crore", "50 हजार"); do not convert.
- businessSize: prefer employee count or turnover evidence; otherwise words like chota/छोटा (Micro),
  madhyam/मध्यम (Small), bada/बड़ा (Medium).
- interestLevel: "mentioned" when a scheme is only named, "inquired" when the user asks about it,
  "detailed" when the user discusses eligibility, documents, amounts or application steps.
- Use null for anything not stated. Never guess a city from a language.
- confidence reflects how much of the profile was explicitly stated (0.9+ only when most fields are explicit).
"""


def format_conversation_history(messages: list[dict]) -> str:
    lines = []
    for index, message in enumerate(messages, start=1):
        role = "User" if str(message.get("role") or "").strip().lower() == "user" else "Assistant"
        content = str(message.get("content") or "").strip()
        lines.append(f"[Message {index}] {role}: {content}")
    return "\n\n".join(lines)


def build_extraction_prompt(messages: list[dict]) -> str:
    history = format_conversation_history(messages)
    return (
        "Analyze the conversation below and extract the user's business profile and scheme interests.\n\n"
        f"{_GUIDELINES}\n"
        "Respond with STRICT JSON only, in exactly this shape:\n"
        f"{json.dumps(OUTPUT_SCHEMA, ensure_ascii=False, indent=2)}\n\n"
        f"Conversation:\n{history}"
    )
