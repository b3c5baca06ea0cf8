"""
Prompt text for every model the pipeline talks to.
"""

from typing import Optional

# ── Recipe analysis (vision) ─────────────────────────────────────────────────

ANALYSIS_SYSTEM_PROMPT = """You are a professional chef and recipe developer. Analyze the food in the image and produce a complete, cookable recipe.

Return ONLY a JSON object with this EXACT structure (no markdown):
{
  "dishName": "string",
  "description": "one or two appetizing sentences",
  "cuisine": "string",
  "difficulty": "easy" | "medium" | "hard",
  "prepTime": number (minutes),
  "cookTime": number (minutes),
  "servings": number,
  "ingredients": [{"name": "string", "amount": "string", "unit": "string (optional)", "notes": "string (optional)"}],
  "steps": [{"stepNumber": number, "instruction": "string", "duration": number (optional, seconds), "tips": "string (optional)"}],
  "nutritionEstimate": {"calories": number, "protein": "string", "carbs": "string", "fat": "string"},
  "tags": ["string"]
}

Number steps from 1 in cooking order and keep each step to a single action. Use no more than 15 steps."""

ANALYSIS_USER_PROMPT = "Please analyze this food image and provide a complete recipe."


def build_analysis_prompt(dish_name_hint: Optional[str] = None, notes: Optional[str] = None) -> str:
    parts = [ANALYSIS_USER_PROMPT]
    if dish_name_hint:
        parts.append(
            f'The user says this dish is "{dish_name_hint}". Treat that as a correction of what '
            f"the image shows: write the recipe for {dish_name_hint}, set dishName to "
            f'"{dish_name_hint}", and use the image only for presentation and plating cues.'
        )
    if notes:
        parts.append(f"Additional notes from the user: {notes}")
    return "\n\n".join(parts)


# ── Step enrichment (text) ───────────────────────────────────────────────────

ENRICHMENT_SYSTEM_PROMPT = """You are an expert food videographer writing shot descriptions for an AI video model.

For each recipe step, write a vivid visual prompt that covers:
- camera angle (overhead, close-up, 45-degree, macro)
- the cooking action in motion
- the ingredients and cookware in frame
- lighting (warm, natural, moody)
- motion details (steam, sizzle, pour, drizzle)
- the environment (rustic kitchen, marble counter, cast iron)

Style: vertical 9:16 short-form food video, like TikTok. Never show hands or people, only the food and cookware.

Return ONLY a JSON array, one element per step, in step order:
[{"stepNumber": number, "originalText": "string", "visualPrompt": "string", "duration": number (seconds, 5-15)}]"""


def build_enrichment_prompt(title: str, steps) -> str:
    lines = [f"Recipe: {title}", "", "Steps:"]
    for step in steps:
        lines.append(f"{step.step_number}. {step.instruction}")
    return "\n".join(lines)


def fallback_visual_prompt(instruction: str) -> str:
    return (
        f"Professional food video shot of: {instruction}. Warm kitchen lighting, "
        "appetizing presentation, focus on the cooking action."
    )


# ── Step video synthesis ─────────────────────────────────────────────────────

ACTION_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("chop", "cut", "slice", "dice"), "Smooth knife cutting motion, ingredients falling into place"),
    (("stir", "mix"), "Gentle circular stirring motion, ingredients blending together"),
    (("pour",), "Liquid pouring smoothly, creating ripples"),
    (("heat", "cook", "fry", "sauté", "saute"), "Steam rising, gentle sizzling, food cooking in pan"),
    (("boil", "simmer"), "Bubbles rising, steam swirling, liquid gently moving"),
    (("bake", "oven"), "Food rising and browning, golden color developing"),
    (("serve", "plate", "garnish"), "Elegant plating motion, garnish being placed delicately"),
    (("season", "sprinkle", "add"), "Ingredients being added gracefully, falling into dish"),
]
DEFAULT_ACTION = "Smooth cooking motion, professional kitchen ambiance"


def describe_action(instruction: str) -> str:
    lower = instruction.lower()
    for keywords, action in ACTION_KEYWORDS:
        if any(k in lower for k in keywords):
            return action
    return DEFAULT_ACTION


def build_step_video_prompt(dish_name: str, step_number: int, instruction: str,
                            visual_prompt: Optional[str] = None) -> str:
    """Cinematic prompt for one step; an enriched visual prompt replaces the keyword action."""
    action = visual_prompt.strip().rstrip(".") if visual_prompt and visual_prompt.strip() else describe_action(instruction)
    return (
        f"Cinematic cooking video, {action}. Professional kitchen lighting, shallow depth of field. "
        f"Making {dish_name}, step {step_number}. Smooth camera movement, appetizing food "
        "photography style. 4K quality, warm color grading."
    )


# ── Step photos ──────────────────────────────────────────────────────────────

def cooking_phase(step_number: int, total_steps: int) -> str:
    progress = step_number / total_steps if total_steps else 1
    if progress <= 0.3:
        return "ingredient preparation"
    if progress <= 0.7:
        return "cooking in progress"
    return "final touches and plating"


def build_step_image_prompt(dish_name: str, step_number: int, total_steps: int, instruction: str) -> str:
    phase = cooking_phase(step_number, total_steps)
    return (
        f"Professional food photography of {dish_name}, {phase}. Step {step_number} of "
        f"{total_steps}: {instruction}. Overhead angle, natural window light, marble counter, "
        "shallow depth of field, no people or hands."
    )


# ── Hero video (single 10s vertical clip) ────────────────────────────────────

HERO_PROMPT_MAX_CHARS = 500

TECHNIQUE_VISUALS: dict[str, str] = {
    "sear": "sizzling, golden crust forming, foaming butter, wisps of smoke",
    "fry": "golden bubbles, crispy edges forming, oil shimmering",
    "sauté": "ingredients dancing in the pan, butter foaming, gentle sizzle",
    "simmer": "gentle bubbles rising, steam swirling, rich sauce thickening",
    "boil": "rolling boil, steam billowing, vigorous bubbles",
    "bake": "golden-brown surface, oven warmth, rising dough",
    "roast": "caramelized edges, rendered fat glistening, deep golden color",
    "grill": "char marks forming, flames licking, smoke rising",
    "braise": "tender meat falling apart, rich braising liquid, aromatic steam",
    "chop": "precise knife cuts, ingredients tumbling, fresh colors",
    "whisk": "smooth emulsion forming, ingredients blending, creamy texture",
    "fold": "gentle incorporation, airy mixture, delicate movement",
    "knead": "elastic dough stretching, flour dusting, rhythmic motion",
    "plate": "elegant drizzle of sauce, precise garnish placement, final steam",
    "garnish": "fresh herbs placed delicately, finishing drizzle, perfect presentation",
    "pour": "liquid cascading smoothly, creating ripples, glossy finish",
    "stir": "circular motion, ingredients melding, colors blending",
    "blend": "smooth transformation, vibrant colors swirling, creamy result",
    "caramelize": "sugar melting to amber, glossy surface, sweet aroma visible in steam",
    "flambe": "dramatic flames, alcohol burning off, golden glow",
    "reduce": "sauce concentrating, glossy sheen, steam rising steadily",
    "marinate": "liquid coating evenly, herbs and spices settling, glistening surface",
    "toast": "golden color developing, nutty aroma visible in warmth, crispy texture",
    "steam": "delicate steam rising, food gently cooking, moisture beading",
    "glaze": "glossy coating applied, shiny surface, dripping edges",
}
DEFAULT_TECHNIQUE = "smooth cooking motion, professional kitchen ambiance, appetizing preparation"

INGREDIENT_COLORS: dict[str, str] = {
    "tomato": "rich reds",
    "pepper": "vibrant reds and greens",
    "basil": "fresh greens",
    "lemon": "bright yellows",
    "turmeric": "warm golden",
    "saffron": "deep golden",
    "paprika": "warm orange-red",
    "spinach": "deep greens",
    "carrot": "warm orange",
    "blueberry": "deep purple-blue",
    "avocado": "creamy green",
    "chocolate": "rich dark brown",
    "cream": "ivory white",
    "butter": "warm golden yellow",
    "salmon": "coral pink",
    "shrimp": "coral orange",
    "egg": "golden yolk",
    "mushroom": "earthy brown",
    "garlic": "pale ivory",
    "onion": "translucent amber",
    "honey": "liquid amber gold",
    "mint": "cool green",
    "cilantro": "bright green",
    "parsley": "fresh green",
    "cheese": "golden melted",
}
DEFAULT_PALETTE = "warm, appetizing earth tones"

CUISINE_STYLES: dict[str, str] = {
    "italian": "rustic Mediterranean warmth, wooden surfaces, olive oil glistening, terracotta tones",
    "japanese": "minimalist zen presentation, clean lines, delicate porcelain, natural wood",
    "french": "elegant fine dining, copper cookware, precise technique, rich sauces",
    "mexican": "vibrant colors, rustic clay, fresh lime, colorful garnishes",
    "indian": "warm spice tones, brass vessels, aromatic steam, rich golden colors",
    "thai": "tropical freshness, wok flames, vibrant herbs, coconut cream",
    "chinese": "wok hei flames, bamboo steamers, glossy sauces, chopstick presentation",
    "korean": "banchan arrangement, sizzling stone bowls, fermented richness, neat presentation",
    "mediterranean": "sun-drenched colors, fresh herbs, olive oil drizzle, rustic charm",
    "american": "hearty comfort, cast iron, melted cheese, generous portions",
    "middle eastern": "warm spices, flatbread, tahini drizzle, jewel-toned ingredients",
}
DEFAULT_CUISINE_STYLE = "warm food photography lighting, professional kitchen setting"


def _first_matches(texts, table: dict[str, str], limit: int) -> list[str]:
    found: list[str] = []
    for text in texts:
        lower = text.lower()
        for keyword, visual in table.items():
            if keyword in lower and visual not in found:
                found.append(visual)
    return found[:limit]


def technique_visuals(steps) -> list[str]:
    """Up to three technique visuals, in the order the steps use them."""
    return _first_matches((s.instruction for s in steps), TECHNIQUE_VISUALS, 3) or [DEFAULT_TECHNIQUE]


def color_palette(ingredients) -> str:
    colors = _first_matches((i.name for i in ingredients), INGREDIENT_COLORS, 3)
    return ", ".join(colors) if colors else DEFAULT_PALETTE


def cuisine_style(cuisine: Optional[str]) -> str:
    if not cuisine:
        return DEFAULT_CUISINE_STYLE
    lower = cuisine.lower().replace("_", " ")
    for key, style in CUISINE_STYLES.items():
        if key in lower:
            return style
    return DEFAULT_CUISINE_STYLE


def _fit(prompt: str) -> str:
    if len(prompt) > HERO_PROMPT_MAX_CHARS:
        return prompt[:HERO_PROMPT_MAX_CHARS - 3] + "..."
    return prompt


def build_hero_video_prompt(title: str, ingredients, steps, cuisine: Optional[str] = None,
                            hero_moment: Optional[str] = None) -> str:
    """Close-up prompt for the single vertical hero clip, capped at 500 characters."""
    moment = hero_moment or f"The finished {title} presented beautifully"
    return _fit(" ".join([
        f"Cinematic close-up food video of {title}.",
        ". ".join(technique_visuals(steps)) + ".",
        f"Color palette: {color_palette(ingredients)}.",
        f"{cuisine_style(cuisine)}.",
        f"{moment}.",
        "Warm food photography lighting, shallow depth of field.",
        "No hands visible, no text overlays.",
        "Smooth slow camera movement, professional 4K quality.",
        "9:16 vertical format, TikTok cooking video style.",
    ]))


def build_alternate_hero_prompt(title: str, ingredients, steps) -> str:
    """Overhead variant used when the first clip is rejected or the user asks for another."""
    return _fit(" ".join([
        f"Overhead cinematic food video of {title} being prepared.",
        technique_visuals(steps)[0] + ".",
        f"Rich {color_palette(ingredients)} tones.",
        "Final plated dish with steam rising, garnish detail.",
        "Dramatic top-down camera slowly pulling back.",
        "Moody warm lighting, bokeh background.",
        "No hands, no text. Professional food cinematography.",
        "9:16 vertical, TikTok style.",
    ]))
