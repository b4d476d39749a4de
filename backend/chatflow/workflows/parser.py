# /chatflow/workflows/parser.py

import logging
import re
import unicodedata
from typing import Iterable, List, Optional, Tuple, TypedDict

from rapidfuzz import fuzz

from chatflow.models.domain import LineItem, Product

logger = logging.getLogger(__name__)

# Best-effort, pure parsing of informal Spanish order text
# ("2 coca cola, 3x pan integral y una leche") against a product catalog.

NUMBER_WORDS = {
    "un": 1, "una": 1, "uno": 1, "media": 1, "medio": 1,
    "dos": 2, "tres": 3, "cuatro": 4, "cinco": 5,
    "seis": 6, "siete": 7, "ocho": 8, "nueve": 9, "diez": 10,
}
STOP_WORDS = {"de", "del", "la", "el", "un", "una", "los", "las"}
NOISE_WORDS = {"quiero", "dame", "me", "das", "porfa", "por", "favor", "hola"}

MATCH_THRESHOLD = 0.4
WORD_SIMILARITY_CUTOFF = 70

_NUMBER_ALT = r"\d+|(?:" + "|".join(sorted(NUMBER_WORDS, key=len, reverse=True)) + r")\b"
LINE_SPLIT_RE = re.compile(r"[\n,;+]|\s+y\s+")
LEADING_QTY_RE = re.compile(rf"^({_NUMBER_ALT})\s*(?:x\s*|de\s+)?(.+)$")
TRAILING_QTY_RE = re.compile(r"^(.+?)\s*x?\s*(\d+)$")
STOCK_INQUIRY_RE = re.compile(
    r"^(?:tenes|tienen|tendras|tendran|hay|queda|quedan|tendra|dispon(?:ible|en|es)"
    r"|te queda|les queda|vas a tener)\s+(.+)$"
)
FILLER_RE = re.compile(r"^(?:algo de|algunas?|algun|stock de)\s+")


class StockInquiry(TypedDict):
    qty: Optional[int]
    product: str


def normalize(text: str) -> str:
    """Lowercases, strips accents and punctuation, collapses whitespace."""
    text = unicodedata.normalize("NFD", (text or "").lower())
    text = "".join(ch for ch in text if unicodedata.category(ch) != "Mn")
    text = re.sub(r"[^a-z0-9\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def singularize(word: str) -> str:
    if len(word) > 4 and word.endswith("es"):
        return word[:-2]
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def _tokens(text: str) -> List[str]:
    return [singularize(w) for w in normalize(text).split() if w not in STOP_WORDS]


def _to_qty(raw: str) -> int:
    if raw.isdigit():
        return int(raw)
    return NUMBER_WORDS.get(raw, 1)


def split_quantity(text: str) -> Tuple[int, str]:
    """
    Splits a single order line into (quantity, product text). Accepts
    "2 coca", "2x coca", "2 de coca", "dos cocas" and the reversed "coca 2".
    Lines without a quantity default to 1.
    """
    line = normalize(text)
    match = LEADING_QTY_RE.match(line)
    if match and match.group(2).strip():
        return _to_qty(match.group(1)), match.group(2).strip()
    match = TRAILING_QTY_RE.match(line)
    if match:
        return int(match.group(2)), match.group(1).strip()
    return 1, line


def _word_matches(search_word: str, name_word: str) -> bool:
    if name_word.startswith(search_word) or search_word.startswith(name_word):
        return min(len(search_word), len(name_word)) >= 3 or search_word == name_word
    if len(search_word) >= 4 and len(name_word) >= 4:
        return fuzz.ratio(search_word, name_word) >= WORD_SIMILARITY_CUTOFF
    return False


def score_product(search: str, product: Product) -> float:
    search_tokens = _tokens(search)
    name_tokens = _tokens(product.name)
    if not search_tokens or not name_tokens:
        return 0.0
    search_key = " ".join(search_tokens)
    name_key = " ".join(name_tokens)

    if search_key == name_key:
        return 1.0
    if search_key in name_key:
        return 0.85
    if name_key in search_key:
        return 0.75
    matched = sum(1 for sw in search_tokens if any(_word_matches(sw, nw) for nw in name_tokens))
    return (matched / len(search_tokens)) * 0.7


def find_best_product(search: str, catalog: Iterable[Product]) -> Optional[Tuple[Product, float]]:
    best: Optional[Product] = None
    best_score = 0.0
    for product in catalog:
        score = score_product(search, product)
        if score > best_score:
            best, best_score = product, score
    if best is not None and best_score >= MATCH_THRESHOLD:
        return best, best_score
    return None


def parse(text: str, catalog: List[Product]) -> List[LineItem]:
    """
    Parses free text into line items. Unrecognised lines are skipped, and
    lines resolving to the same product have their quantities merged.
    """
    if not text or not catalog:
        return []

    items: List[LineItem] = []
    for raw_line in LINE_SPLIT_RE.split(text.lower()):
        if not raw_line or not raw_line.strip():
            continue
        line = " ".join(w for w in normalize(raw_line).split() if w not in NOISE_WORDS)
        qty, search = split_quantity(line)
        if len(search) < 2 or qty <= 0:
            continue

        match = find_best_product(search, catalog)
        if match is None:
            logger.debug(f"No product match for '{search}'")
            continue
        product, score = match
        logger.debug(f"'{search}' -> '{product.name}' (score: {score:.2f}, qty: {qty})")

        for i, existing in enumerate(items):
            if existing.product_id == product.id:
                items[i] = existing.model_copy(update={"qty": existing.qty + qty})
                break
        else:
            items.append(LineItem(product_id=product.id, name=product.name, qty=qty, unit_price=product.price))
    return items


def detect_stock_inquiry(text: str) -> Optional[StockInquiry]:
    """
    Detects availability questions such as "tenes 10 hamburguesas?" or
    "hay papas?". Returns the requested quantity (None when not given)
    and the product text, or None if the text is not a stock question.
    """
    if not text:
        return None
    normalized = normalize(text)
    match = STOCK_INQUIRY_RE.match(normalized)
    if not match:
        return None

    rest = match.group(1).strip()
    qty_match = LEADING_QTY_RE.match(rest)
    if qty_match:
        qty: Optional[int] = _to_qty(qty_match.group(1))
        product = qty_match.group(2).strip()
    else:
        qty = None
        product = FILLER_RE.sub("", rest).strip()

    if len(product) < 3:
        return None
    return StockInquiry(qty=qty, product=product)
