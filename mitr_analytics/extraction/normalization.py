"""
Canonicalization of multilingual business attributes.

Users describe their business in English, Hindi and Hinglish ("mera kapde ka
business hai Bombay mein, 5 lakh turnover"). The helpers below map those raw
tokens onto the vocabulary the analytics tables are keyed on: canonical city
names, a fixed industry taxonomy, INR amounts and the Micro/Small/Medium scale.
"""
import re
from typing import Any, Iterable, Optional

BUSINESS_SIZES = ("Micro", "Small", "Medium")

LOCATION_MAPPINGS: dict[str, str] = {
    "mumbai": "Mumbai", "bombay": "Mumbai", "मुंबई": "Mumbai",
    "delhi": "Delhi", "dilli": "Delhi", "दिल्ली": "Delhi", "new delhi": "Delhi",
    "bangalore": "Bangalore", "bengaluru": "Bangalore", "bangalor": "Bangalore",
    "bangaluru": "Bangalore", "बेंगलुरु": "Bangalore",
    "kolkata": "Kolkata", "calcutta": "Kolkata", "कोलकाता": "Kolkata",
    "chennai": "Chennai", "madras": "Chennai", "चेन्नई": "Chennai",
    "hyderabad": "Hyderabad", "हैदराबाद": "Hyderabad",
    "pune": "Pune", "पुणे": "Pune",
    "ahmedabad": "Ahmedabad", "amdavad": "Ahmedabad", "अहमदाबाद": "Ahmedabad",
    "jaipur": "Jaipur", "जयपुर": "Jaipur",
    "lucknow": "Lucknow", "लखनऊ": "Lucknow",
    "kanpur": "Kanpur", "कानपुर": "Kanpur",
    "nagpur": "Nagpur", "नागपुर": "Nagpur",
    "indore": "Indore", "इंदौर": "Indore",
    "bhopal": "Bhopal", "भोपाल": "Bhopal",
    "visakhapatnam": "Visakhapatnam", "vizag": "Visakhapatnam",
    "patna": "Patna", "पटना": "Patna",
    "vadodara": "Vadodara", "baroda": "Vadodara",
    "ghaziabad": "Ghaziabad", "गाजियाबाद": "Ghaziabad",
    "ludhiana": "Ludhiana", "लुधियाना": "Ludhiana",
    "agra": "Agra", "आगरा": "Agra",
    "nashik": "Nashik", "नाशिक": "Nashik",
    "faridabad": "Faridabad", "फरीदाबाद": "Faridabad",
    "meerut": "Meerut", "मेरठ": "Meerut",
    "rajkot": "Rajkot", "राजकोट": "Rajkot",
    "varanasi": "Varanasi", "banaras": "Varanasi", "वाराणसी": "Varanasi",
    "srinagar": "Srinagar", "श्रीनगर": "Srinagar",
    "amritsar": "Amritsar", "अमृतसर": "Amritsar",
    "chandigarh": "Chandigarh", "चंडीगढ़": "Chandigarh",
    "coimbatore": "Coimbatore", "कोयंबटूर": "Coimbatore",
    "kochi": "Kochi", "cochin": "Kochi", "कोच्चि": "Kochi",
}

# Insertion order matters: the first contained key wins.
INDUSTRY_MAPPINGS: dict[str, str] = {
    "textile": "Manufacturing - Textiles",
    "textiles": "Manufacturing - Textiles",
    "kapde": "Manufacturing - Textiles",
    "कपड़े": "Manufacturing - Textiles",
    "garment": "Manufacturing - Textiles",
    "fabric": "Manufacturing - Textiles",
    "cloth": "Manufacturing - Textiles",
    "food processing": "Manufacturing - Food Processing",
    "food": "Manufacturing - Food Processing",
    "खाना": "Manufacturing - Food Processing",
    "खाद्य": "Manufacturing - Food Processing",
    "electronics": "Manufacturing - Electronics",
    "electronic": "Manufacturing - Electronics",
    "इलेक्ट्रॉनिक्स": "Manufacturing - Electronics",
    "chemical": "Manufacturing - Chemicals",
    "रसायन": "Manufacturing - Chemicals",
    "pharmaceutical": "Manufacturing - Pharmaceuticals",
    "pharma": "Manufacturing - Pharmaceuticals",
    "medicine": "Manufacturing - Pharmaceuticals",
    "दवा": "Manufacturing - Pharmaceuticals",
    "furniture": "Manufacturing - Furniture",
    "फर्नीचर": "Manufacturing - Furniture",
    "leather": "Manufacturing - Leather",
    "चमड़ा": "Manufacturing - Leather",
    "plastic": "Manufacturing - Plastics",
    "प्लास्टिक": "Manufacturing - Plastics",
    "metal": "Manufacturing - Metal Products",
    "धातु": "Manufacturing - Metal Products",
    "retail": "Retail",
    "shop": "Retail",
    "dukaan": "Retail",
    "दुकान": "Retail",
    "store": "Retail",
    "grocery": "Retail - Grocery",
    "kirana": "Retail - Grocery",
    "किराना": "Retail - Grocery",
    "clothing": "Retail - Clothing",
    "clothes": "Retail - Clothing",
    "electronics shop": "Retail - Electronics",
    "restaurant": "Food & Beverage",
    "hotel": "Food & Beverage",
    "dhaba": "Food & Beverage",
    "ढाबा": "Food & Beverage",
    "cafe": "Food & Beverage",
    "bakery": "Food & Beverage",
    "catering": "Food & Beverage",
    "it": "Information Technology",
    "software": "Information Technology",
    "tech": "Information Technology",
    "technology": "Information Technology",
    "सॉफ्टवेयर": "Information Technology",
    "consulting": "Professional Services",
    "consultant": "Professional Services",
    "परामर्श": "Professional Services",
    "education": "Education & Training",
    "training": "Education & Training",
    "coaching": "Education & Training",
    "शिक्षा": "Education & Training",
    "healthcare": "Healthcare",
    "health": "Healthcare",
    "clinic": "Healthcare",
    "स्वास्थ्य": "Healthcare",
    "salon": "Personal Services",
    "beauty": "Personal Services",
    "parlor": "Personal Services",
    "parlour": "Personal Services",
    "repair": "Repair & Maintenance",
    "maintenance": "Repair & Maintenance",
    "मरम्मत": "Repair & Maintenance",
    "construction": "Construction",
    "निर्माण": "Construction",
    "builder": "Construction",
    "contractor": "Construction",
    "agriculture": "Agriculture",
    "farming": "Agriculture",
    "खेती": "Agriculture",
    "कृषि": "Agriculture",
    "agri": "Agriculture",
    "transport": "Transportation & Logistics",
    "logistics": "Transportation & Logistics",
    "परिवहन": "Transportation & Logistics",
    "delivery": "Transportation & Logistics",
    "trading": "Trading & Distribution",
    "wholesale": "Trading & Distribution",
    "व्यापार": "Trading & Distribution",
    "distributor": "Trading & Distribution",
}

INDUSTRY_CATEGORIES = sorted(set(INDUSTRY_MAPPINGS.values()))

BUSINESS_SIZE_KEYWORDS: dict[str, list[str]] = {
    "Micro": [
        "micro", "chota", "छोटा", "small", "nano", "solo", "tiny",
        "very small", "bahut chota", "बहुत छोटा", "single person",
        "one man", "alone", "अकेला",
    ],
    "Small": [
        "small", "madhyam", "मध्यम", "growing", "few employees",
        "small-medium", "developing", "thoda bada", "थोड़ा बड़ा",
    ],
    "Medium": [
        "medium", "bada", "बड़ा", "large", "established", "big",
        "kaafi bada", "काफी बड़ा", "well established",
    ],
}

# Micro: up to 1 crore turnover, Small: up to 10 crore.
MICRO_TURNOVER_LIMIT = 10_000_000
SMALL_TURNOVER_LIMIT = 100_000_000
MICRO_EMPLOYEE_LIMIT = 10
SMALL_EMPLOYEE_LIMIT = 50

_SCRIPT_RANGES = (
    ("bengali", re.compile(r"[\u0980-\u09FF]")),
    ("punjabi", re.compile(r"[\u0A00-\u0A7F]")),
    ("gujarati", re.compile(r"[\u0A80-\u0AFF]")),
    ("oriya", re.compile(r"[\u0B00-\u0B7F]")),
    ("tamil", re.compile(r"[\u0B80-\u0BFF]")),
    ("telugu", re.compile(r"[\u0C00-\u0C7F]")),
    ("kannada", re.compile(r"[\u0C80-\u0CFF]")),
    ("malayalam", re.compile(r"[\u0D00-\u0D7F]")),
)
_DEVANAGARI = re.compile(r"[\u0900-\u097F]")
_LATIN = re.compile(r"[a-zA-Z]")

_CURRENCY_NOISE = re.compile(r"₹|\brs\.?|\brupees?\b|रुपये|रुपया", re.IGNORECASE)
_NUMBER = r"(\d+(?:\.\d+)?)"
_LAKH = re.compile(_NUMBER + r"\s*(?:lakhs?|lacs?|l(?![a-z])|लाख)", re.IGNORECASE)
_CRORE = re.compile(_NUMBER + r"\s*(?:crores?|cr(?![a-z])|करोड़)", re.IGNORECASE)
_THOUSAND = re.compile(_NUMBER + r"\s*(?:thousand|k(?![a-z])|हजार|हज़ार)", re.IGNORECASE)
_PLAIN = re.compile(_NUMBER)

_SOLO = re.compile(r"alone|solo|single|one man|अकेला|koi nahi", re.IGNORECASE)
_RANGE = re.compile(r"(\d+)\s*(?:-|–|to)\s*(\d+)", re.IGNORECASE)
_FIRST_INT = re.compile(r"(\d+)")


def _title_case(value: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in value.strip().split())


def _contains_key(text: str, key: str) -> bool:
    # Two-letter keys such as "it" must match a whole word, not "fitness".
    if len(key) <= 2:
        return re.search(rf"\b{re.escape(key)}\b", text) is not None
    return key in text


def normalize_location(location: Optional[str]) -> Optional[str]:
    if not location or not str(location).strip():
        return None
    text = str(location).strip().lower()
    if text in LOCATION_MAPPINGS:
        return LOCATION_MAPPINGS[text]
    for key, canonical in LOCATION_MAPPINGS.items():
        if key in text:
            return canonical
    return _title_case(str(location))


def normalize_industry(industry: Optional[str]) -> Optional[str]:
    if not industry or not str(industry).strip():
        return None
    raw = str(industry).strip()
    if raw in INDUSTRY_CATEGORIES:
        return raw
    text = raw.lower()
    if text in INDUSTRY_MAPPINGS:
        return INDUSTRY_MAPPINGS[text]
    for key, canonical in INDUSTRY_MAPPINGS.items():
        if _contains_key(text, key):
            return canonical
    return _title_case(raw)


def normalize_currency(value: Any) -> Optional[float]:
    """Parse an INR amount such as "5 lakh", "₹2.5 crore", "10k" or "5,00,000"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    if not text:
        return None
    cleaned = _CURRENCY_NOISE.sub("", text).replace(",", "").strip()

    for pattern, factor in ((_LAKH, 100_000), (_CRORE, 10_000_000), (_THOUSAND, 1_000)):
        match = pattern.search(cleaned)
        if match:
            return float(match.group(1)) * factor

    match = _PLAIN.search(cleaned)
    if match:
        return float(match.group(1))
    return None


def normalize_employee_count(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip().lower()
    if not text:
        return None
    if _SOLO.search(text):
        return 1
    match = _RANGE.search(text)
    if match:
        low, high = int(match.group(1)), int(match.group(2))
        # Round half up, so "5-10" gives 8.
        return int((low + high) / 2 + 0.5)
    match = _FIRST_INT.search(text)
    if match:
        return int(match.group(1))
    return None


def normalize_business_size(
    size: Optional[str],
    employee_count: Optional[int] = None,
    annual_turnover: Optional[float] = None,
) -> Optional[str]:
    """Classify into Micro/Small/Medium.

    Numeric evidence wins: employee count first, then turnover, then the
    free-text size adjective.
    """
    if employee_count is not None:
        if employee_count <= MICRO_EMPLOYEE_LIMIT:
            return "Micro"
        if employee_count <= SMALL_EMPLOYEE_LIMIT:
            return "Small"
        return "Medium"

    if annual_turnover is not None:
        if annual_turnover <= MICRO_TURNOVER_LIMIT:
            return "Micro"
        if annual_turnover <= SMALL_TURNOVER_LIMIT:
            return "Small"
        return "Medium"

    if not size or not str(size).strip():
        return None
    text = str(size).strip()
    for canonical in BUSINESS_SIZES:
        if text.lower() == canonical.lower():
            return canonical
    lowered = text.lower()
    for canonical, keywords in BUSINESS_SIZE_KEYWORDS.items():
        for keyword in keywords:
            if keyword in lowered:
                return canonical
    return None


def detect_languages(text: str) -> list[str]:
    if not text:
        return []
    languages: list[str] = []
    has_hindi = bool(_DEVANAGARI.search(text))
    has_english = bool(_LATIN.search(text))
    if has_hindi:
        languages.append("hindi")
    if has_english:
        languages.append("english")
    if has_hindi and has_english:
        languages.append("hinglish")
    for name, pattern in _SCRIPT_RANGES:
        if pattern.search(text):
            languages.append(name)
    return languages


def detect_conversation_languages(messages: Iterable[dict]) -> list[str]:
    """Union of per-message languages, in first-seen order.

    Mixing is judged per message: one Hindi and one English message do not
    make a conversation Hinglish.
    """
    seen: list[str] = []
    for message in messages:
        for language in detect_languages(str(message.get("content") or "")):
            if language not in seen:
                seen.append(language)
    return seen
