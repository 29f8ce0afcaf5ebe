from typing import Dict, Optional

DEFAULT_LOCALE = "en"
SUPPORTED_LOCALES = ("en", "nl")


def get_localized_content(
    localized: Optional[Dict[str, str]],
    default: Optional[str],
    locale: Optional[str] = None,
) -> Optional[str]:
    """Pick the text for `locale`, falling back to the untranslated default."""
    if not localized or not locale:
        return default
    return localized.get(locale) or default


def locale_from_accept_language(header: Optional[str]) -> str:
    if header:
        for part in header.split(","):
            lang = part.split(";")[0].strip().lower()[:2]
            if lang in SUPPORTED_LOCALES:
                return lang
    return DEFAULT_LOCALE
