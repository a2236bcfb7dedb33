from __future__ import annotations

import re
from typing import Iterable, Sequence

from .post import AnimalType, Extras, Post, PostType, SexType

_I = re.IGNORECASE

# Python's \b would do for Cyrillic, but explicit letter lookarounds keep digits
# and underscores out of the boundary test.
_NB = r"(?<![^\W\d_])"
_NA = r"(?![^\W\d_])"

_SPACE_RE = re.compile(r"\s+")

_LOST_RE = re.compile(r"пропал|потерял|убежал|сбежал", _I)
_FOUND_RE = re.compile(r"найден|нашл[аи]|наш[её]л|подобрал[аи]", _I)
_SIGHTING_RE = re.compile(r"замечен|видел|бегает|появил", _I)
_ADOPTION_RE = re.compile(
    r"ищет\s+дом|в\s+добрые\s+руки|отда(?:[ёе]м|м)|пристраив[ае]", _I
)
_CARE_MARKERS_RE = re.compile(
    rf"стерилиз|кастрир|вакц|привит|чипир|{_NB}лот(?:ок|к)", _I
)
_FUNDRAISING_RE = re.compile(
    rf"{_NB}(?:сбор\w*|оплатить|перевод\w*|передержк\w*|карт[аеуы]){_NA}", _I
)
_FOUND_SPECIFIC_RE = re.compile(
    r"найден\S*.*?(?:кот|собак|п[её]с|кобел|щен|живот)", _I
)

_PHONE_RE = re.compile(
    r"(?:\+7|8)\s*\(?\d{3}\)?[\s-]?\d{3}[\s-]?\d{2}[\s-]?\d{2}"
    r"|\b9\d{2}[\s-]?\d{3}[\s-]?\d{2}[\s-]?\d{2}\b"
    r"|\b7\d{10}\b",
    re.ASCII,
)

_VK_MENTION_RE = re.compile(r"\[(id\d+)\|([^\]]+)\]")
_VK_ACCOUNT_URL_RE = re.compile(
    r"vk\.com/(?!(?:wall|photo|video|album|topic|clip|doc|market|story)-?\d)\S+",
    _I,
)
_ANY_URL_RE = re.compile(r"(?:https?://|www\.)\S+|(?:m\.)?vk\.(?:com|ru)/\S+", _I)
_URL_TRAILING_PUNCT = ".,!?;:)»\"'"

_LINK_ONLY_MAX_CHARS = 20

_CAT_RE = re.compile(
    rf"{_NB}кошечк|{_NB}кошк|{_NB}кот(?:ик|[её]н|ят)"
    rf"|{_NB}кот(?:[ауеы]|ом|ов)?{_NA}"
    r"|кис[ао]ньк|бенгальск",
    _I,
)
_DOG_RE = re.compile(
    rf"собак|собачк|{_NB}пс(?:а|у|ом|ы|ов)?{_NA}"
    rf"|{_NB}п[её]с(?:ик\w*|ин\w*)?{_NA}|кобел|щен",
    _I,
)
_MALE_RE = re.compile(r"кобел[её]к|кобель|мальчик", _I)
_FEMALE_RE = re.compile(rf"девочк|{_NB}сука{_NA}", _I)

_BREED_RE = re.compile(
    r"бенгальск(?:ая|ий|ой|ое|ие|ую|ого)?"
    r"|йорк(?:шир(?:ск(?:ий|ая))?)?"
    r"|лабрадор|овчарк|хаск|спаниел|метис"
    rf"|{_NB}такс(?:[аыу]|ой|ик)?{_NA}",
    _I,
)

_AGE_RE = re.compile(
    r"(?<!\d)(\d{1,2}\s*-\s*\d{1,2}|\d{1,2}(?:[,.]\d+)?)\s*[xх]?\s*"
    rf"(месяцев|месяца|месяц|мес|года|год|лет){_NA}",
    _I,
)
_DATE_RE = re.compile(r"(?<!\d)\d{1,2}\.\d{1,2}\.(?:\d{4}|\d{2})(?!\d)")
_TIME_RE = re.compile(r"(?:в\s*)?(?<!\d)\d{1,2}[:.]\d{2}(?!\d)", _I)
_TIME_LOOKAHEAD_CHARS = 30

_LOCATION_TRIGGER_RE = re.compile(
    r"улиц|ул\.|шосс|просп|пер(?:е)?ул|площад|бульвар|район|мкр|снт|город|деревн|пос(?:е)?лок"
    r"|Ижевск|Закирова|Первомайск|Люкшудья|Шабердино|Воткинск",
    _I,
)

_STATUS_RE = re.compile(
    r"рыж|белоснежн|пуглив|ласков|игрив|домашн|без\s*ошейн|кастрир|стерилиз|вакцин|чипир|лоток",
    _I,
)
_STATUS_MAX_CHARS = 140

_NAME_WORD = r"([A-Za-zА-Яа-яЁё](?:[^\W\d_]|-){2,})"
_NAME_AFTER_KEYWORD_RE = re.compile(
    rf"(?:кличк[аеиу]|зовут)[^\n]{{0,20}}?\s+{_NAME_WORD}", _I
)
_NAME_AFTER_CAT_RE = re.compile(
    r"кошк[аи]\s+((?-i:[A-ZА-ЯЁ])(?:[^\W\d_]|-){2,})", _I
)

_CAPITALIZED_WORD_RE = re.compile(rf"{_NB}[А-ЯЁ][а-яё]{{2,}}{_NA}")
_CONTACT_WINDOW_CHARS = 25
_CONTACT_STOPLIST = frozenset(
    w.casefold()
    for w in ("Телефон", "Район", "Улица", "Кошка", "Собака", "Проспект", "Бульвар")
)

_STERILIZED_RE = re.compile(r"стерилиз|кастрир", _I)
_VACCINATED_RE = re.compile(r"вакцин|привит", _I)
_CHIPPED_RE = re.compile(r"чипир", _I)
_LITTER_RE = re.compile(rf"{_NB}лот(?:ок|к[аеиоу])", _I)


def dedupe_keep_order(values: Iterable[str]) -> tuple[str, ...]:
    out: list[str] = []
    seen: set[str] = set()
    for item in values:
        if not item or item in seen:
            continue
        seen.add(item)
        out.append(item)
    return tuple(out)


def normalize_space(text: str) -> str:
    s = (text or "").replace("\u00a0", " ")
    return _SPACE_RE.sub(" ", s).strip()


def _title_case(value: str) -> str:
    s = (value or "").strip().lower()
    if not s:
        return s
    return s[0].upper() + s[1:]


def _optional(value: str) -> str | None:
    s = (value or "").strip()
    return s or None


def is_link_only(text: str) -> bool:
    """
    True when the text is essentially a link: after stripping mentions and URLs
    at most a short remainder is left. Very short posts count as link-only too.
    """
    stripped = _VK_MENTION_RE.sub("", text or "")
    stripped = _ANY_URL_RE.sub("", stripped)
    remaining = sum(1 for ch in stripped if not ch.isspace())
    return remaining <= _LINK_ONLY_MAX_CHARS


def detect_type(text: str) -> PostType:
    s = text or ""
    lost = bool(_LOST_RE.search(s))
    found = bool(_FOUND_RE.search(s))

    if found and lost:
        return "found" if _FOUND_SPECIFIC_RE.search(s) else "lost"
    if found:
        return "found"
    if lost:
        return "lost"
    if _SIGHTING_RE.search(s):
        return "sighting"
    if _ADOPTION_RE.search(s) or _CARE_MARKERS_RE.search(s):
        return "adoption"
    if _FUNDRAISING_RE.search(s):
        return "fundraising"
    return "unknown"


def normalize_phone(raw: str) -> str | None:
    digits = "".join(ch for ch in raw if "0" <= ch <= "9")
    if len(digits) == 11 and digits[0] == "8":
        digits = "7" + digits[1:]
    if len(digits) == 11 and digits[0] == "7":
        return "+" + digits
    if len(digits) == 10 and digits[0] == "9":
        return "+7" + digits
    return None


def extract_phones(text: str) -> tuple[str, ...]:
    normalized = (normalize_phone(m.group(0)) for m in _PHONE_RE.finditer(text or ""))
    return dedupe_keep_order(p for p in normalized if p)


def extract_vk_accounts(text: str) -> tuple[str, ...]:
    """Bracket mentions first, then profile URLs; first-seen order."""
    s = text or ""
    mentions = [m.group(0) for m in _VK_MENTION_RE.finditer(s)]
    urls = [m.group(0).rstrip(_URL_TRAILING_PUNCT) for m in _VK_ACCOUNT_URL_RE.finditer(s)]
    return dedupe_keep_order(mentions + urls)


def detect_animal(text: str) -> AnimalType:
    s = text or ""
    if _CAT_RE.search(s):
        return "cat"
    if _DOG_RE.search(s):
        return "dog"
    return "unknown"


def detect_sex(text: str) -> SexType:
    s = text or ""
    if _MALE_RE.search(s):
        return "m"
    if _FEMALE_RE.search(s):
        return "f"
    return "unknown"


def extract_breed(text: str) -> str | None:
    m = _BREED_RE.search(text or "")
    if m is None:
        return None
    return _optional(_title_case(m.group(0)))


def extract_age(text: str) -> str | None:
    m = _AGE_RE.search(text or "")
    if m is None:
        return None
    value = m.group(1).replace(",", ".")
    return _optional(normalize_space(f"{value} {m.group(2).lower()}"))


def extract_when(text: str) -> str | None:
    """Date in dd.mm.yy(yy) form, plus a time if one follows within 30 characters."""
    s = text or ""
    m = _DATE_RE.search(s)
    if m is None:
        return None

    date = m.group(0)
    after = s[m.end() : m.end() + _TIME_LOOKAHEAD_CHARS]
    tm = _TIME_RE.search(after)
    if tm is None:
        return date

    t = tm.group(0).lower().strip()
    if t.startswith("в"):
        t = t[1:]
    t = t.strip().replace(".", ":")
    return f"{date} {t}".strip()


def _is_numeric_like(value: str) -> bool:
    has_digit = False
    for ch in value:
        if "0" <= ch <= "9":
            has_digit = True
        elif ch not in " -":
            return False
    return has_digit


def extract_location(text: str) -> str | None:
    """
    Shortest comma-delimited segment containing a street/district/place trigger.

    A following segment made only of digits, spaces and dashes is appended as a
    house number ("Пушкинская улица, 283" -> "Пушкинская улица 283").
    """
    parts = (text or "").split(",")
    best = ""
    for i, part in enumerate(parts):
        segment = part.strip()
        if not segment or not _LOCATION_TRIGGER_RE.search(segment):
            continue

        candidate = segment
        if i + 1 < len(parts):
            nxt = parts[i + 1].strip()
            if nxt and _is_numeric_like(nxt):
                candidate = f"{candidate} {nxt}".strip()

        if not best or len(candidate) < len(best):
            best = candidate

    return _optional(best)


def extract_status_details(text: str) -> str | None:
    found = dedupe_keep_order(m.group(0) for m in _STATUS_RE.finditer(text or ""))
    if not found:
        return None
    return _optional(", ".join(found)[:_STATUS_MAX_CHARS])


def extract_pet_name(text: str) -> str | None:
    s = text or ""
    for pattern in (_NAME_AFTER_KEYWORD_RE, _NAME_AFTER_CAT_RE):
        m = pattern.search(s)
        if m is not None:
            return _optional(_title_case(m.group(1)))
    return None


def _names_near_phones(text: str) -> list[str]:
    words = list(_CAPITALIZED_WORD_RE.finditer(text))
    names: list[str] = []
    for phone in _PHONE_RE.finditer(text):
        lo = max(0, phone.start() - _CONTACT_WINDOW_CHARS)
        hi = min(len(text), phone.end() + _CONTACT_WINDOW_CHARS)
        for word in words:
            if word.start() < lo or word.end() > hi:
                continue
            if word.group(0).casefold() in _CONTACT_STOPLIST:
                continue
            names.append(word.group(0))
    return names


def _names_from_mentions(text: str) -> list[str]:
    out: list[str] = []
    for m in _VK_MENTION_RE.finditer(text):
        tokens = m.group(2).split()
        if tokens:
            out.append(tokens[0])
    return out


def extract_contact_names(text: str) -> tuple[str, ...]:
    s = text or ""
    return dedupe_keep_order(_names_near_phones(s) + _names_from_mentions(s))


def detect_extras(text: str) -> Extras:
    s = text or ""
    return Extras(
        sterilized=bool(_CARE_MARKERS_RE.search(s) and _STERILIZED_RE.search(s)),
        vaccinated=bool(_VACCINATED_RE.search(s)),
        chipped=bool(_CHIPPED_RE.search(s)),
        litter_ok=bool(_LITTER_RE.search(s)),
    )


def classify(
    post_id: int,
    raw: str,
    *,
    owner_id: int = 0,
    date: int = 0,
    photos: Sequence[str] = (),
) -> Post:
    """
    Turn raw wall text into a classified Post.

    Pure and total: any string yields a Post. Empty text is `empty`, a bare link
    is `link`; everything else goes through type detection and the independent
    field extractors.
    """
    raw_text = raw or ""
    text = normalize_space(raw_text)
    base = {
        "owner_id": int(owner_id),
        "post_id": int(post_id),
        "date": int(date),
        "raw": raw_text,
        "text": text,
        "photos": dedupe_keep_order(photos),
    }

    if not text:
        return Post(type="empty", **base)

    accounts = extract_vk_accounts(text)
    if is_link_only(text):
        return Post(type="link", vk_accounts=accounts, **base)

    return Post(
        type=detect_type(text),
        animal=detect_animal(text),
        sex=detect_sex(text),
        breed=extract_breed(text),
        age=extract_age(text),
        name=extract_pet_name(text),
        location=extract_location(text),
        when=extract_when(text),
        status_details=extract_status_details(text),
        phones=extract_phones(text),
        contact_names=extract_contact_names(text),
        vk_accounts=accounts,
        extras=detect_extras(text),
        **base,
    )
