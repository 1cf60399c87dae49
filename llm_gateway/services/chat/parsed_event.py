from dataclasses import dataclass
from typing import Optional, Dict, Any, Literal


@dataclass
class ParsedStreamEvent:
    """
    Одна строка стрима с кешированным распарсенным JSON

    Attributes:
        raw: Исходная строка (без перевода строки)
        format: 'sse' если строка несла префикс data:, иначе 'ndjson'
        data: Распарсенный JSON (None если парсинг не удался или строка служебная)
        is_valid: Флаг валидности строки
        error: Ошибка парсинга (если есть)
        is_done: Строка является сигналом конца стрима провайдера
    """
    raw: str
    format: Literal['sse', 'ndjson']
    data: Optional[Dict[str, Any]] = None
    is_valid: bool = True
    error: Optional[str] = None
    is_done: bool = False

    @property
    def has_data(self) -> bool:
        return self.is_valid and self.data is not None
