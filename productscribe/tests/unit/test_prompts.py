from __future__ import annotations

from productscribe.services.prompts import (
    SYSTEM_PROMPT,
    build_description_prompt,
    build_messages,
    detect_platform,
    detect_product_type,
    product_details,
)


def test_product_type_detection_uses_first_matching_row() -> None:
    assert detect_product_type("Smart watch with phone alerts") == "timepiece"
    assert detect_product_type("https://shop.test/p/bluetooth-speaker") == "audio device"
    assert detect_product_type(None, "") == "product"
    assert detect_product_type("Ceramic vase") == "product"


def test_platform_detection() -> None:
    assert detect_platform("https://www.amazon.com/dp/B000") == "Amazon"
    assert detect_platform("https://www.aliexpress.com/item/1.html") == "AliExpress"
    assert detect_platform("https://example.shop/item") == "unknown"


def test_url_prompt_includes_tone_length_and_language() -> None:
    details = product_details("url", "https://www.ebay.com/itm/leather-wallet", None)
    prompt = build_description_prompt(
        details,
        brand_tone="luxury",
        description_length="short",
        language="german",
        target_audience="Young professionals",
        key_features="Hand-stitched, RFID blocking",
    )
    assert "- Product URL: https://www.ebay.com/itm/leather-wallet" in prompt
    assert "- Platform: eBay" in prompt
    assert "BRAND TONE: Write in a sophisticated, premium tone" in prompt
    assert "TARGET AUDIENCE: Young professionals" in prompt
    assert "KEY FEATURES TO HIGHLIGHT: Hand-stitched, RFID blocking" in prompt
    assert "Write the description in German (Deutsch)." in prompt
    assert "LENGTH REQUIREMENT: 50-100 words - concise and impactful" in prompt


def test_manual_and_barcode_prompts_describe_the_product() -> None:
    manual = product_details("manual", None, {"name": "Trail Running Shoe", "category": "fashion"})
    assert manual.platform == "Manual Entry"
    prompt = build_description_prompt(manual, brand_tone="fun")
    assert "- Product Name: Trail Running Shoe" in prompt
    assert "not about the target audience" in prompt
    assert "TARGET AUDIENCE" not in prompt

    barcode = product_details(
        "barcode", None, {"name": "Oat Snack Bar", "barcode": "0123456789012", "brand": "Nutri"}
    )
    assert barcode.product_type == "food/beverage"
    prompt = build_description_prompt(barcode, brand_tone="minimalist", description_length="extensive")
    assert "- Barcode/UPC: 0123456789012" in prompt
    assert "- Source: Barcode Database" in prompt
    assert "300-500 words" in prompt


def test_messages_pair_system_and_user_prompt() -> None:
    messages = build_messages("describe this")
    assert messages == [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "describe this"},
    ]
