"""Russian number, date and amount-in-words presentation for KS forms."""

from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

_UNITS = {
    "masc": ["", "один", "два", "три", "четыре", "пять", "шесть", "семь", "восемь", "девять"],
    "fem": ["", "одна", "две", "три", "четыре", "пять", "шесть", "семь", "восемь", "девять"],
}
_TEENS = [
    "десять",
    "одиннадцать",
    "двенадцать",
    "тринадцать",
    "четырнадцать",
    "пятнадцать",
    "шестнадцать",
    "семнадцать",
    "восемнадцать",
    "девятнадцать",
]
_TENS = ["", "десять", "двадцать", "тридцать", "сорок", "пятьдесят", "шестьдесят", "семьдесят", "восемьдесят", "девяносто"]
_HUNDREDS = ["", "сто", "двести", "триста", "четыреста", "пятьсот", "шестьсот", "семьсот", "восемьсот", "девятьсот"]

# Magnitude groups from units upwards: (word forms, grammatical gender).
_SCALES: list[tuple[tuple[str, str, str] | None, str]] = [
    (None, "masc"),
    (("тысяча", "тысячи", "тысяч"), "fem"),
    (("миллион", "миллиона", "миллионов"), "masc"),
    (("миллиард", "миллиарда", "миллиардов"), "masc"),
    (("триллион", "триллиона", "триллионов"), "masc"),
]

RUBLE_FORMS = ("рубль", "рубля", "рублей")
KOPECK_FORMS = ("копейка", "копейки", "копеек")


def to_decimal(value: Any) -> Decimal | None:
    """Coerce ``value`` to a finite Decimal, ``None`` when it is not a number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip().replace(",", "."))
        except (InvalidOperation, ValueError):
            return None
    if not result.is_finite():
        return None
    return result


def quantize_money(value: Any) -> Decimal:
    result = to_decimal(value) or Decimal("0")
    return result.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def format_amount(value: Any, decimals: int = 2) -> str:
    """``1432500`` -> ``"1 432 500,00"``; null or NaN give the zero string."""
    number = to_decimal(value)
    if number is None:
        number = Decimal("0")
    quantized = number.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    if quantized == 0:
        quantized = abs(quantized)
    text = f"{quantized:,.{decimals}f}"
    return text.replace(",", " ").replace(".", ",")


def format_date(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, (date, datetime)):
        return value.strftime("%d.%m.%Y")
    if isinstance(value, str):
        raw = value.strip()
        try:
            parsed: date = datetime.fromisoformat(raw)
        except ValueError:
            try:
                parsed = date.fromisoformat(raw[:10])
            except ValueError:
                return ""
        return parsed.strftime("%d.%m.%Y")
    return ""


def choose_form(value: int, forms: tuple[str, str, str]) -> str:
    value = abs(value) % 100
    if 10 < value < 20:
        return forms[2]
    value = value % 10
    if value == 1:
        return forms[0]
    if 2 <= value <= 4:
        return forms[1]
    return forms[2]


def _triplet_to_words(triplet: int, gender: str) -> list[str]:
    words: list[str] = []
    h = triplet // 100
    t_u = triplet % 100
    t = t_u // 10
    u = t_u % 10

    if h:
        words.append(_HUNDREDS[h])
    if 10 <= t_u <= 19:
        words.append(_TEENS[t_u - 10])
    else:
        if t:
            words.append(_TENS[t])
        if u:
            words.append(_UNITS[gender][u])
    return words


def integer_to_words(value: int) -> str:
    """Masculine cardinal for ``value`` without any currency word."""
    if value == 0:
        return "ноль"
    if value < 0:
        return f"минус {integer_to_words(-value)}"

    groups: list[str] = []
    remainder = value
    index = 0
    while remainder > 0:
        if index >= len(_SCALES):
            raise ValueError(f"Число слишком велико: {value}")
        triplet = remainder % 1000
        remainder //= 1000
        if triplet:
            forms, gender = _SCALES[index]
            words = _triplet_to_words(triplet, gender)
            if forms:
                words.append(choose_form(triplet, forms))
            groups.insert(0, " ".join(words))
        index += 1
    return " ".join(groups)


def amount_to_words(value: Any) -> str:
    """Amount in rubles with kopecks as digits, e.g. ``Две тысячи рублей 00 копеек``."""
    quantized = quantize_money(value)
    negative = quantized < 0
    quantized = abs(quantized)
    rubles = int(quantized)
    kopecks = int((quantized - rubles) * 100)

    text = (
        f"{integer_to_words(rubles)} {choose_form(rubles, RUBLE_FORMS)} "
        f"{kopecks:02d} {choose_form(kopecks, KOPECK_FORMS)}"
    )
    if negative:
        text = f"минус {text}"
    return text[:1].upper() + text[1:]
