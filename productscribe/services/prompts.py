from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


SYSTEM_PROMPT = (
    "You are an expert e-commerce copywriter specializing in creating high-converting product "
    "descriptions that boost sales and improve SEO rankings."
)

BRAND_TONES: dict[str, str] = {
    "luxury": (
        "Write in a sophisticated, premium tone that emphasizes quality, exclusivity, and elegance. "
        "Use refined language that appeals to discerning customers who value luxury."
    ),
    "casual": (
        "Write in a friendly, conversational tone that feels approachable and relatable. "
        "Use everyday language that connects with customers on a personal level."
    ),
    "professional": (
        "Write in an authoritative, professional tone that builds trust and credibility. "
        "Use clear, confident language that demonstrates expertise."
    ),
    "fun": (
        "Write in a playful, energetic tone that's engaging and memorable. "
        "Use creative language that brings personality and excitement to the product."
    ),
    "minimalist": (
        "Write in a clean, concise tone that focuses on essential information. "
        "Use simple, direct language that communicates clearly without unnecessary flourishes."
    ),
}


@dataclass(frozen=True)
class LengthSpec:
    words: str
    style: str
    structure: str
    closing: str


DESCRIPTION_LENGTHS: dict[str, LengthSpec] = {
    "short": LengthSpec(
        "50-100 words",
        "concise and impactful",
        "Focus on the most compelling benefits and key features only",
        "Be punchy and direct - every word counts",
    ),
    "medium": LengthSpec(
        "150-250 words",
        "balanced and comprehensive",
        "Include headline, key benefits, and important features with good flow",
        "Balance detail with readability for optimal conversion",
    ),
    "extensive": LengthSpec(
        "300-500 words",
        "detailed and thorough",
        "Complete product story with headline, detailed benefits, features, and strong call-to-action",
        "Provide comprehensive details and compelling storytelling",
    ),
}

LANGUAGES: dict[str, str] = {
    "english": "English",
    "german": "German (Deutsch)",
    "french": "French (Français)",
    "spanish": "Spanish (Español)",
    "portuguese": "Portuguese (Português)",
    "italian": "Italian (Italiano)",
    "dutch": "Dutch (Nederlands)",
    "russian": "Russian (Русский)",
    "japanese": "Japanese (日本語)",
    "korean": "Korean (한국어)",
    "chinese": "Chinese (中文)",
    "arabic": "Arabic (العربية)",
    "hindi": "Hindi (हिन्दी)",
}

INPUT_MODES = ("url", "barcode", "manual")

# Ordered keyword table; the first matching row names the product type.
_PRODUCT_TYPES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("watch", "clock", "timepiece"), "timepiece"),
    (("phone", "mobile", "smartphone"), "smartphone"),
    (("headphone", "earphone", "audio", "speaker"), "audio device"),
    (("shirt", "dress", "clothing", "apparel", "fashion"), "fashion item"),
    (("laptop", "computer"), "computer"),
    (("kitchen", "cook", "appliance"), "kitchen appliance"),
    (("book", "novel", "magazine"), "book"),
    (("toy", "game"), "toy/game"),
    (("beauty", "cosmetic", "makeup"), "beauty product"),
    (("home", "decor", "furniture"), "home decor item"),
    (("food", "snack", "drink", "beverage"), "food/beverage"),
    (("health", "supplement", "vitamin"), "health product"),
    (("tool", "hardware", "equipment"), "tool/equipment"),
)

_PLATFORMS = (("aliexpress", "AliExpress"), ("amazon", "Amazon"), ("ebay", "eBay"), ("shopify", "Shopify"))


def detect_product_type(*texts: str | None) -> str:
    text = " ".join(part for part in texts if part).lower()
    if not text:
        return "product"
    for keywords, product_type in _PRODUCT_TYPES:
        if any(keyword in text for keyword in keywords):
            return product_type
    return "product"


def detect_platform(url: str) -> str:
    lowered = url.lower()
    for marker, platform in _PLATFORMS:
        if marker in lowered:
            return platform
    return "unknown"


@dataclass(frozen=True)
class ProductDetails:
    product_type: str
    platform: str
    url: str | None = None
    name: str | None = None
    brand: str | None = None
    category: str | None = None
    barcode: str | None = None
    description: str | None = None


def product_details(input_mode: str, product_url: str | None, product_info: Mapping[str, Any] | None) -> ProductDetails:
    # Barcode and manual modes describe the product directly; url mode infers from the link.
    if input_mode in ("barcode", "manual") and product_info:
        name = product_info.get("name")
        category = product_info.get("category")
        platform = "Manual Entry" if input_mode == "manual" else str(product_info.get("source") or "Barcode Database")
        return ProductDetails(
            product_type=detect_product_type(name, category),
            platform=platform,
            name=name,
            brand=product_info.get("brand"),
            category=category,
            barcode=product_info.get("barcode"),
            description=product_info.get("description"),
        )
    url = product_url or ""
    return ProductDetails(product_type=detect_product_type(url), platform=detect_platform(url), url=url)


def build_description_prompt(
    details: ProductDetails,
    *,
    brand_tone: str,
    description_length: str = "medium",
    language: str = "english",
    target_audience: str | None = None,
    key_features: str | None = None,
) -> str:
    length = DESCRIPTION_LENGTHS.get(description_length, DESCRIPTION_LENGTHS["medium"])
    lines = [
        "Generate a compelling, SEO-optimized product description for an e-commerce listing.",
        "",
        "PRODUCT DETAILS:",
    ]
    if details.barcode:
        lines += [
            f"- Product Name: {details.name or 'Unknown Product'}",
            f"- Brand: {details.brand or 'Unknown Brand'}",
            f"- Category: {details.category or 'General Product'}",
            f"- Product Type: {details.product_type}",
            f"- Barcode/UPC: {details.barcode}",
            f"- Source: {details.platform}",
        ]
        if details.description:
            lines.append(f"- Existing Description: {details.description}")
    elif details.name:
        lines += [
            f"- Product Name: {details.name}",
            f"- Product Type: {details.product_type}",
            "",
            f"IMPORTANT: Write about the PRODUCT ({details.name}), not about the target audience. "
            "The target audience is WHO you're selling to, the product name is WHAT you're selling.",
        ]
    else:
        lines += [
            f"- Product URL: {details.url}",
            f"- Product Type: {details.product_type}",
            f"- Platform: {details.platform}",
        ]
    lines += ["", f"BRAND TONE: {BRAND_TONES[brand_tone]}"]
    if target_audience:
        lines.append(f"TARGET AUDIENCE: {target_audience}")
    if key_features:
        lines.append(f"KEY FEATURES TO HIGHLIGHT: {key_features}")
    lines += [
        "",
        f"LANGUAGE: Write the description in {LANGUAGES.get(language, 'English')}. "
        "Use natural, fluent, native-level language that sounds authentic to native speakers.",
        "",
        f"LENGTH REQUIREMENT: {length.words} - {length.style}",
        f"STRUCTURE: {length.structure}",
        "",
        "REQUIREMENTS:",
        "1. Create a compelling headline that grabs attention",
        f"2. Write in the specified length ({length.words}) while maintaining high quality",
        "3. Include SEO-friendly keywords naturally in the target language",
        "4. Focus on benefits, not just features",
        "5. Create urgency or desire to purchase",
        "6. Make it conversion-focused",
        "7. Maintain the same professional quality regardless of length",
        "8. Use culturally appropriate marketing language for the target market",
        f"9. {length.closing}",
        "",
        "Please generate a professional product description that matches the specified brand tone "
        "and appeals to the target audience in the specified language.",
    ]
    return "\n".join(lines)


def build_messages(prompt: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
