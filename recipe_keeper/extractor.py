"""Turn a recipe web page into a :class:`~recipe_keeper.models.Recipe`.

The page is fetched, a representative image is cached, the markup is reduced
to plain text and handed to a chat-completions style text-generation service.
The completion is untrusted: the JSON object is dug out of it, validated and
normalized before a recipe is built.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from .config import GenerationSettings, ModelConfig
from .exceptions import ConfigurationError, FetchError, GenerationError, MalformedResponseError
from .models import Ingredient, IngredientGroup, InstructionGroup, Recipe, as_list, clean_title
from .storage import ImageCache

logger = logging.getLogger(__name__)

T = TypeVar("T")
C = TypeVar("C")

MAX_CONTENT_LENGTH = 20000
MAX_TOKENS = 4000
MAX_SECTION_HINTS = 12
USER_AGENT = "Mozilla/5.0"

SYSTEM_PROMPT = (
    "You are a recipe extraction assistant. You MUST respond with ONLY valid JSON. "
    "Never include explanations, markdown, or any text outside the JSON object. "
    "Always format your response as a single JSON object."
)

PROMPT_TEMPLATE = """Extract the recipe from the content below and respond ONLY with one JSON object in exactly this format:

{{
  "schemaVersion": 2,
  "name": "Recipe name",
  "ingredientsGroups": [{{"title": "", "items": ["ingredient 1", "ingredient 2"]}}],
  "instructionGroups": [{{"title": "", "items": ["step 1", "step 2"]}}],
  "tags": ["tag1", "tag2"],
  "cookingTime": "",
  "calories": ""
}}

Rules:
* Use only information present in the content. Never invent or estimate values.
* cookingTime and calories must be empty strings unless the content states them.
* Include every ingredient with its quantity and unit exactly as written.
* Split the instructions into short, granular steps, one action per item. Do not summarize or omit steps.
* When the recipe has named sections (for example "Sauce" or "Dough"), create one group per section with that title.
* When the content has no natural sections, use a single group with an empty title on each side.
* tags: 3-5 short descriptive tags such as cuisine, meal type or cooking method.
{section_hints}{extra_instructions}
Content:
{content}
"""

_WHITESPACE = re.compile(r"\s+")
_FOR_THE_PHRASE = re.compile(r"\bfor the ([a-z][a-z' -]{1,40}?)\s*:", re.IGNORECASE)

_NESTED_OBJECT = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}")
_FLAT_OBJECT = re.compile(r"\{[^{}]*\}")

_NUMBER_MARKER = r"\d{1,2}[.)](?!\d)"
_BULLET_MARKER = r"[-*•]"
_NUMBERED_STEP = re.compile(r"(?<!\S)(\d{1,2})[.)](?!\d)(?=\s)")
_SPLIT_BEFORE_BULLET = re.compile(r"\s+(?=[*•]\s)|(?<=[.!?])\s+(?=-\s)")
_STRIP_MARKER = re.compile(rf"^\s*(?:{_NUMBER_MARKER}|{_BULLET_MARKER}(?=\s))\s*")

Page = Union[str, BeautifulSoup]


# =========================================================
# Page handling
# =========================================================
def parse_page(page: Page) -> BeautifulSoup:
    if isinstance(page, BeautifulSoup):
        return page
    return BeautifulSoup(page, "html.parser")


def resolve_url(image_url: str, base_url: str) -> str:
    """Resolve an image reference found on ``base_url`` to an absolute URL."""

    if image_url.startswith("http"):
        return image_url
    if image_url.startswith("//"):
        return "https:" + image_url

    base = urlparse(base_url)
    if not base.scheme or not base.netloc:
        return image_url
    origin = f"{base.scheme}://{base.netloc}"
    if image_url.startswith("/"):
        return origin + image_url

    directory = re.sub(r"[^/]*$", "", base.path or "/")
    return origin + directory + image_url


def extract_image_url(page: Page, base_url: str) -> Optional[str]:
    """Return the Open Graph image, else the first ``<img>``, as an absolute URL."""

    soup = parse_page(page)

    og_image = soup.find("meta", property="og:image")
    if og_image and og_image.get("content", "").strip():
        return resolve_url(og_image["content"].strip(), base_url)

    image = soup.find("img", src=True)
    if image and image["src"].strip():
        return resolve_url(image["src"].strip(), base_url)
    return None


def clean_page_text(page: Page, limit: int = MAX_CONTENT_LENGTH) -> str:
    """Drop scripts and styles from the page and return its collapsed text.

    A parsed page passed in is modified in place.
    """

    soup = parse_page(page)
    for tag in soup.find_all(["script", "style"]):
        tag.decompose()

    content = _WHITESPACE.sub(" ", soup.get_text(" ")).strip()
    return content[:limit]


def find_section_hints(page: Page, limit: int = MAX_SECTION_HINTS) -> List[str]:
    """Collect headings and "For the X:" phrases that may name recipe sections."""

    soup = parse_page(page)

    candidates: List[str] = []
    for heading in soup.find_all(["h2", "h3", "h4"]):
        candidates.append(_WHITESPACE.sub(" ", heading.get_text(" ")).strip())

    text = clean_page_text(soup)
    candidates.extend(match.strip() for match in _FOR_THE_PHRASE.findall(text))

    hints: List[str] = []
    seen = set()
    for candidate in candidates:
        key = candidate.lower()
        if not candidate or len(candidate) > 80 or key in seen:
            continue
        seen.add(key)
        hints.append(candidate)
        if len(hints) >= limit:
            break
    return hints


def build_prompt(
    content: str,
    section_hints: Sequence[str] = (),
    extra_instructions: Optional[str] = None,
) -> str:
    hints = ""
    if section_hints:
        hints = "* Possible section names found on the page: " + "; ".join(section_hints) + "\n"
    extra = ""
    if extra_instructions and extra_instructions.strip():
        extra = f"* Additional instructions from the user: {extra_instructions.strip()}\n"
    return PROMPT_TEMPLATE.format(section_hints=hints, extra_instructions=extra, content=content)


# =========================================================
# Completion parsing
# =========================================================
def extract_json_object(completion: str) -> dict:
    """Return the JSON object embedded in ``completion``.

    Models wrap their answer in prose or code fences often enough that the
    text cannot be parsed directly. Candidates are the object matched with one
    level of nested braces, the first brace-free object, and a decoder scan
    from the first ``{``; the first one carrying a ``name`` wins, else the
    first one that parsed.
    """

    start = completion.find("{")
    if start == -1:
        raise MalformedResponseError("No JSON found in response")

    parsed: List[dict] = []
    for pattern in (_NESTED_OBJECT, _FLAT_OBJECT):
        match = pattern.search(completion)
        if not match:
            continue
        try:
            data = json.loads(match.group(0))
        except ValueError:
            continue
        if isinstance(data, dict):
            parsed.append(data)

    try:
        data, _ = json.JSONDecoder().raw_decode(completion, start)
    except ValueError:
        data = None
    if isinstance(data, dict):
        parsed.append(data)

    if not parsed:
        raise MalformedResponseError("Could not parse the JSON in the response")
    return next((data for data in parsed if "name" in data), parsed[0])


def _numbered_split_points(line: str) -> List[int]:
    """Positions of the markers that continue an enumeration on ``line``.

    The enumeration starts at a marker opening the line, or at an inline
    marker followed later by its successor. After that only the next number
    in sequence counts, so "1. Bake for 10. Then rest" stays one step.
    """

    markers = [(match.start(), int(match.group(1))) for match in _NUMBERED_STEP.finditer(line)]
    points: List[int] = []
    expected: Optional[int] = None
    for index, (position, number) in enumerate(markers):
        if expected is None:
            opens_line = not line[:position].strip()
            continued = any(later == number + 1 for _, later in markers[index + 1 :])
            if opens_line or continued:
                expected = number + 1
                if not opens_line:
                    points.append(position)
        elif number == expected:
            points.append(position)
            expected += 1
    return points


def _split_line(line: str) -> List[str]:
    bounds = [0] + _numbered_split_points(line) + [len(line)]
    parts = [line[start:end] for start, end in zip(bounds, bounds[1:])]
    return [fragment for part in parts for fragment in _SPLIT_BEFORE_BULLET.split(part)]


def normalize_instructions(items: Iterable[Any]) -> List[str]:
    """Split instruction strings that hold several enumerated steps.

    Never turns a list with non-empty text into an empty one.
    """

    texts = [item if isinstance(item, str) else str(item) for item in items if item is not None]

    steps: List[str] = []
    for text in texts:
        for line in text.splitlines():
            for fragment in _split_line(line):
                step = _STRIP_MARKER.sub("", fragment, count=1).strip()
                if step:
                    steps.append(step)

    if steps:
        return steps
    return [text.strip() for text in texts if text.strip()]


def _ingredient_items(value: Any) -> List[Ingredient]:
    ingredients = []
    for item in as_list(value):
        ingredient = Ingredient.coerce(item)
        ingredient.name = ingredient.name.strip()
        if ingredient.name:
            ingredients.append(ingredient)
    return ingredients


def _group_parts(group: Any) -> Tuple[Optional[str], Any]:
    if isinstance(group, dict):
        return clean_title(group.get("title")), group.get("items")
    return None, group


def assemble_groups(data: dict) -> Tuple[List[IngredientGroup], List[InstructionGroup]]:
    """Map the parsed groups onto model types.

    Each side uses its ``...Groups`` list when one is given, even an empty
    one, and otherwise falls back to the flat ``ingredients`` /
    ``instructions`` field wrapped in one untitled group.
    """

    raw_ingredient_groups = data.get("ingredientsGroups")
    if isinstance(raw_ingredient_groups, list):
        ingredients_groups = []
        for group in raw_ingredient_groups:
            title, items = _group_parts(group)
            ingredients_groups.append(IngredientGroup(title=title, items=_ingredient_items(items)))
    elif data.get("ingredients") is not None:
        ingredients_groups = [IngredientGroup(items=_ingredient_items(data.get("ingredients")))]
    else:
        ingredients_groups = []

    raw_instruction_groups = data.get("instructionGroups")
    if isinstance(raw_instruction_groups, list):
        instruction_groups = []
        for group in raw_instruction_groups:
            title, items = _group_parts(group)
            instruction_groups.append(InstructionGroup(title=title, items=normalize_instructions(as_list(items))))
    elif data.get("instructions") is not None:
        instruction_groups = [InstructionGroup(items=normalize_instructions(as_list(data.get("instructions"))))]
    else:
        instruction_groups = []

    return ingredients_groups, instruction_groups


def _optional_field(value: Any) -> Optional[str]:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    return str(value).strip() or None


def build_recipe(data: dict, *, image_uri: Optional[str] = None, source_url: Optional[str] = None) -> Recipe:
    """Validate a parsed completion and build the recipe from it."""

    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise MalformedResponseError("Missing recipe name in the response")

    ingredients_groups, instruction_groups = assemble_groups(data)
    tags = [str(tag).strip() for tag in as_list(data.get("tags")) if tag is not None and str(tag).strip()]

    return Recipe(
        name=name.strip(),
        image_uri=image_uri,
        ingredients_groups=ingredients_groups,
        instruction_groups=instruction_groups,
        source_url=source_url,
        cooking_time=_optional_field(data.get("cookingTime")),
        calories=_optional_field(data.get("calories")),
        tags=tags,
    )


def first_successful(
    candidates: Iterable[C],
    attempt: Callable[[C], T],
    describe: Callable[[C], str] = str,
) -> T:
    """Return the result of the first candidate whose attempt succeeds."""

    last_error: Optional[GenerationError] = None
    for candidate in candidates:
        try:
            return attempt(candidate)
        except GenerationError as exc:
            logger.warning("%s failed: %s", describe(candidate), exc)
            last_error = exc

    if last_error is None:
        raise GenerationError("No models configured")
    raise GenerationError("All models failed to respond") from last_error


# =========================================================
# Pipeline
# =========================================================
class RecipeExtractor:
    """Extraction pipeline for one generation configuration.

    Instances hold no per-call state, so separate extractions may run
    concurrently on one instance.
    """

    def __init__(
        self,
        settings: GenerationSettings,
        *,
        image_cache: Optional[ImageCache] = None,
        session: Optional[requests.Session] = None,
        cors_proxy: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.settings = settings
        self._image_cache = image_cache
        self._session = session or requests.Session()
        self._cors_proxy = cors_proxy
        self._timeout = timeout

    def extract(self, url: str, extra_instructions: Optional[str] = None) -> Recipe:
        if not self.settings.is_configured:
            raise ConfigurationError(
                "No AI model is configured. Set the model endpoint and model name in the settings."
            )

        page = parse_page(self.fetch_page(url))

        image_url = extract_image_url(page, url)
        image_uri = self.save_image(image_url) if image_url else None
        if image_url is None:
            logger.warning("No image found on %s", url)

        try:
            section_hints = find_section_hints(page)
            prompt = build_prompt(clean_page_text(page), section_hints, extra_instructions)
            completion = self.generate(prompt)
            recipe = build_recipe(extract_json_object(completion), image_uri=image_uri, source_url=url)
        except Exception:
            self._discard_image(image_uri)
            raise

        logger.info("Extracted recipe %r from %s", recipe.name, url)
        return recipe

    def fetch_page(self, url: str) -> str:
        if self._cors_proxy:
            fetch_url = self._cors_proxy + url
            headers = {"Origin": "https://localhost"}
        else:
            fetch_url = url
            headers = {"User-Agent": USER_AGENT}

        logger.info("Fetching %s", fetch_url)
        try:
            response = self._session.get(fetch_url, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc

        if not response.ok:
            raise FetchError(f"Failed to fetch {url}: HTTP {response.status_code}")
        return response.text

    def save_image(self, image_url: str) -> Optional[str]:
        """Download ``image_url`` into the image cache; ``None`` on failure."""

        if self._image_cache is None:
            return None

        image_path = self._image_cache.new_image_path(image_url)
        try:
            if not self._image_cache.exists(self._image_cache.directory):
                self._image_cache.mkdir(self._image_cache.directory)
            self._image_cache.download_file(image_url, image_path)
        except (requests.RequestException, OSError) as exc:
            logger.warning("Error downloading image %s: %s", image_url, exc)
            return None

        logger.info("Image downloaded to %s", image_path)
        return image_path

    def generate(self, prompt: str) -> str:
        return first_successful(
            self.settings.model_configs(),
            lambda config: self._call_model(config, prompt),
            describe=lambda config: f"Model {config.model}",
        )

    def _call_model(self, config: ModelConfig, prompt: str) -> str:
        body: dict = {
            "model": config.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": config.temperature,
            "seed": config.seed,
            "max_tokens": MAX_TOKENS,
        }
        if config.supports_response_format:
            body["response_format"] = {"type": "json_object"}

        logger.info("Trying model %s", config.model)
        try:
            response = self._session.post(
                self.settings.endpoint,
                json=body,
                headers=self.settings.headers(),
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise GenerationError(f"API call failed: {exc}") from exc

        if not response.ok:
            raise GenerationError(f"API call failed: {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise GenerationError("API response is not JSON") from exc

        if not isinstance(data, dict):
            raise GenerationError("Invalid API response structure")

        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise GenerationError(f"API Error: {message or 'Unknown error'}")

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise GenerationError("Invalid API response structure")
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise GenerationError("Invalid API response structure")

        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise GenerationError("Empty content in API response")
        return content

    def _discard_image(self, image_uri: Optional[str]) -> None:
        if not image_uri or self._image_cache is None:
            return
        try:
            if self._image_cache.exists(image_uri):
                self._image_cache.unlink(image_uri)
        except OSError:
            logger.exception("Error removing unused image %s", image_uri)


__all__ = [
    "MAX_CONTENT_LENGTH",
    "RecipeExtractor",
    "assemble_groups",
    "build_prompt",
    "build_recipe",
    "clean_page_text",
    "extract_image_url",
    "extract_json_object",
    "find_section_hints",
    "first_successful",
    "normalize_instructions",
    "parse_page",
    "resolve_url",
]
