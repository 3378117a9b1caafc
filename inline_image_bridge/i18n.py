"""User-visible status and error texts."""

MESSAGES = {
    "en": {
        "generating": "Generating image...",
        "generating_retry": "Generating (retry {attempt}/{max_retries})...",
        "retry_in": "Retrying in {seconds:g}s...",
        "loading_previous": "Loading previous images...",
        "searching_npc": "Looking for NPC references...",
        "saving": "Saving...",
        "found_tags": "Found tags: {count}. Generating...",
        "image_ready": "Image {index}/{total} ready",
        "generation_failed": "Generation error: {error}",
        "no_tags_to_regenerate": "No tags to regenerate",
        "settings_error": "Settings error: {details}",
        "missing_endpoint": "endpoint URL is not set",
        "missing_api_key": "API key is not set",
        "missing_model": "model is not selected",
    },
    "ru": {
        "generating": "Генерация картинки...",
        "generating_retry": "Генерация (повтор {attempt}/{max_retries})...",
        "retry_in": "Повтор через {seconds:g}с...",
        "loading_previous": "Загрузка предыдущих картинок...",
        "searching_npc": "Поиск NPC референсов...",
        "saving": "Сохранение...",
        "found_tags": "Найдено тегов: {count}. Генерация...",
        "image_ready": "Картинка {index}/{total} готова",
        "generation_failed": "Ошибка генерации: {error}",
        "no_tags_to_regenerate": "Нет тегов для перегенерации",
        "settings_error": "Ошибка настроек: {details}",
        "missing_endpoint": "URL эндпоинта не настроен",
        "missing_api_key": "API ключ не настроен",
        "missing_model": "Модель не выбрана",
    },
}


def tr(key: str, locale: str = "en", **kwargs) -> str:
    catalog = MESSAGES.get(locale) or MESSAGES["en"]
    template = catalog.get(key) or MESSAGES["en"].get(key, key)
    return template.format(**kwargs) if kwargs else template
