"""
User-facing message catalogue.

Lookups fall back to Russian for unknown languages and to the basic variant
for unknown credit types.
"""

from __future__ import annotations

from typing import Mapping

from .models import DEFAULT_LANGUAGE, CreditType, Facet, Persona, normalize_language

Catalogue = Mapping[str, str]

LOADING: Mapping[str, Catalogue] = {
    Persona.ARINA.value: {
        "ru": "☕️ Смотрю в гущу...",
        "en": "☕️ Reading the grounds...",
        "zh": "☕️ 正在解读咖啡渣...",
    },
    Persona.CASSANDRA.value: {
        "ru": "🔮 Всматриваюсь в знаки судьбы...",
        "en": "🔮 Gazing into the signs of fate...",
        "zh": "🔮 凝视命运的征兆...",
    },
}

INVALID_IMAGE_FALLBACK: Catalogue = {
    "ru": "На фото не видно кофейной гущи. Пришлите, пожалуйста, снимок чашки сверху.",
    "en": "I can't see coffee grounds in this photo. Please send a picture of the cup from above.",
    "zh": "照片中看不到咖啡渣。请从上方拍摄杯子的照片。",
}

INSUFFICIENT_CREDITS: Mapping[str, Catalogue] = {
    CreditType.BASIC.value: {
        "ru": "💳 Недостаточно Basic-кредитов. /credits для проверки баланса.",
        "en": "💳 Not enough Basic credits. Use /credits to check your balance.",
        "zh": "💳 Basic积分不足。使用 /credits 查看余额。",
    },
    CreditType.PRO.value: {
        "ru": "💳 Недостаточно Pro-кредитов для полного анализа. /credits для проверки баланса.",
        "en": "💳 Not enough Pro credits for the full reading. Use /credits to check your balance.",
        "zh": "💳 Pro积分不足，无法进行完整分析。使用 /credits 查看余额。",
    },
    CreditType.CASSANDRA.value: {
        "ru": "💳 Недостаточно кредитов Кассандры. /credits для проверки баланса.",
        "en": "💳 Not enough Cassandra credits. Use /credits to check your balance.",
        "zh": "💳 卡桑德拉积分不足。使用 /credits 查看余额。",
    },
}

SESSION_EXPIRED: Catalogue = {
    "ru": "Сессия истекла. Отправьте новое фото.",
    "en": "Session expired. Please send a new photo.",
    "zh": "会话已过期。请发送新照片。",
}

FACET_ALREADY_COVERED: Catalogue = {
    "ru": "Эта тема уже раскрыта для этой чашки. Выберите другую.",
    "en": "This topic was already read for this cup. Please pick another one.",
    "zh": "这个主题已经为这杯咖啡解读过了。请选择其他主题。",
}

FAILURE: Catalogue = {
    "ru": "Произошла ошибка при анализе изображения. Пожалуйста, попробуйте ещё раз.",
    "en": "Something went wrong while reading your cup. Please try again.",
    "zh": "分析图片时出错。请重试。",
}

FAILURE_REFUNDED: Catalogue = {
    "ru": "Произошла ошибка при анализе изображения. Ваш кредит возвращён. Пожалуйста, попробуйте ещё раз.",
    "en": "Something went wrong while reading your cup. Your credit has been returned. Please try again.",
    "zh": "分析图片时出错。您的积分已退还。请重试。",
}

CHAT_FAILURE: Catalogue = {
    "ru": "Не получилось ответить. Попробуйте написать ещё раз чуть позже.",
    "en": "I couldn't answer just now. Please try again a little later.",
    "zh": "暂时无法回复。请稍后再试。",
}

CHAT_FAILURE_REFUNDED: Catalogue = {
    "ru": "Не получилось ответить. Ваш кредит возвращён. Попробуйте написать ещё раз чуть позже.",
    "en": "I couldn't answer just now. Your credit has been returned. Please try again a little later.",
    "zh": "暂时无法回复。您的积分已退还。请稍后再试。",
}

RETOPIC_PROMPT: Catalogue = {
    "ru": "Хотите узнать, что гуща говорит о другой теме?",
    "en": "Want to know what the grounds say about another topic?",
    "zh": "想知道咖啡渣对其他主题有何启示吗？",
}

TOPIC_PROMPT: Catalogue = {
    "ru": "О чём хотите узнать?",
    "en": "What would you like to know about?",
    "zh": "您想了解什么？",
}

FACET_LABELS: Mapping[str, tuple[str, Catalogue]] = {
    Facet.LOVE.value: ("❤️", {"ru": "Любовь", "en": "Love", "zh": "爱情"}),
    Facet.CAREER.value: ("💼", {"ru": "Карьера", "en": "Career", "zh": "事业"}),
    Facet.MONEY.value: ("💰", {"ru": "Деньги", "en": "Money", "zh": "财运"}),
    Facet.HEALTH.value: ("🌿", {"ru": "Здоровье", "en": "Health", "zh": "健康"}),
    Facet.FAMILY.value: ("🏡", {"ru": "Семья", "en": "Family", "zh": "家庭"}),
    Facet.SPIRITUAL.value: ("✨", {"ru": "Духовность", "en": "Spirituality", "zh": "灵性"}),
    Facet.ALL.value: ("💎", {"ru": "Всё сразу (PRO)", "en": "All topics (PRO)", "zh": "全部主题 (PRO)"}),
}


def _pick(catalogue: Catalogue, language: str | None) -> str:
    return catalogue.get(normalize_language(language)) or catalogue[DEFAULT_LANGUAGE]


def loading(persona: str, language: str | None) -> str:
    return _pick(LOADING.get(persona, LOADING[Persona.ARINA.value]), language)


def invalid_image_fallback(language: str | None) -> str:
    return _pick(INVALID_IMAGE_FALLBACK, language)


def insufficient_credits(credit_type: str, language: str | None) -> str:
    key = credit_type.value if isinstance(credit_type, CreditType) else str(credit_type)
    return _pick(INSUFFICIENT_CREDITS.get(key, INSUFFICIENT_CREDITS[CreditType.BASIC.value]), language)


def session_expired(language: str | None) -> str:
    return _pick(SESSION_EXPIRED, language)


def facet_already_covered(language: str | None) -> str:
    return _pick(FACET_ALREADY_COVERED, language)


def failure(language: str | None, *, refunded: bool) -> str:
    return _pick(FAILURE_REFUNDED if refunded else FAILURE, language)


def chat_failure(language: str | None, *, refunded: bool = False) -> str:
    return _pick(CHAT_FAILURE_REFUNDED if refunded else CHAT_FAILURE, language)


def retopic_prompt(language: str | None) -> str:
    return _pick(RETOPIC_PROMPT, language)


def topic_prompt(language: str | None) -> str:
    return _pick(TOPIC_PROMPT, language)


def facet_label(facet: str, language: str | None) -> str:
    emoji, names = FACET_LABELS[Facet(facet).value]
    return f"{emoji} {_pick(names, language)}"
