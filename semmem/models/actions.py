"""
Structured user actions produced from natural-language commands.

Actions form a closed tagged union discriminated by `type`. Payloads are
validated here before they are cached or returned, so an unknown or malformed
action never leaves the action cache.
"""

from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

ACTION_TYPES = ('highlight', 'create_note', 'search', 'export', 'speak', 'question', 'navigate')

# Older clients emitted these names
LEGACY_ACTION_TYPES = {
    'search_concept': 'search',
    'tts_play': 'speak',
    'tts': 'speak',
    'note': 'create_note',
}

HIGHLIGHT_COLORS = {
    'yellow': '#FFD700',
    'green': '#90EE90',
    'blue': '#87CEEB',
    'pink': '#FFB6C1',
    'orange': '#FFA500',
    'purple': '#DDA0DD',
}


class ActionParseError(Exception):
    """Command could not be mapped to any known action kind."""
    pass


class _ActionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra='ignore')


class Position(_ActionModel):
    x: float = 0
    y: float = 0
    width: Optional[float] = None
    height: Optional[float] = None


class DateRange(_ActionModel):
    start: str
    end: str


class HighlightAction(_ActionModel):
    type: Literal['highlight']
    text: str
    color_id: str = 'yellow'
    color_hex: Optional[str] = None
    page_number: Optional[int] = None
    position_data: Optional[Position] = None


class CreateNoteAction(_ActionModel):
    type: Literal['create_note']
    content: str
    page_number: Optional[int] = None
    note_type: Literal['cornell', 'outline', 'mindmap', 'chart', 'boxing', 'freeform'] = 'freeform'
    position: Optional[Position] = None


class SearchFilters(_ActionModel):
    document_ids: Optional[List[str]] = None
    date_range: Optional[DateRange] = None
    entity_types: Optional[List[str]] = None


class SearchAction(_ActionModel):
    type: Literal['search']
    query: str
    scope: Literal['current', 'library', 'memory', 'all'] = 'all'
    filters: Optional[SearchFilters] = None


class ExportAction(_ActionModel):
    type: Literal['export']
    format: Literal['markdown', 'json', 'pdf', 'docx']
    content: Literal['notes', 'highlights', 'annotations', 'all'] = 'all'
    filters: Optional[SearchFilters] = None


class SpeechSettings(_ActionModel):
    speed: Optional[float] = None
    pitch: Optional[float] = None
    volume: Optional[float] = None
    voice: Optional[str] = None


class SpeakAction(_ActionModel):
    type: Literal['speak']
    mode: Literal['page', 'to_end', 'selection']
    page_number: Optional[int] = None
    settings: Optional[SpeechSettings] = None


class QuestionAction(_ActionModel):
    type: Literal['question']
    query: str
    context: Literal['document', 'memory', 'both'] = 'document'
    mode: Optional[Literal['study', 'general', 'notes']] = None


class NavigateAction(_ActionModel):
    type: Literal['navigate']
    target: Literal['page', 'section', 'bookmark', 'highlight']
    value: Union[int, str]


Action = Annotated[Union[HighlightAction, CreateNoteAction, SearchAction, ExportAction, SpeakAction, QuestionAction,
                         NavigateAction],
                   Field(discriminator='type')]

_action_adapter = TypeAdapter(Action)


def parse_action(payload: Any) -> Action:
    """Validate a loosely-typed payload into one of the known action kinds.

    Args:
        payload: Decoded JSON object

    Returns:
        Typed action model

    Raises:
        ActionParseError: If the payload is not an object of a known, well-formed kind
    """
    if not isinstance(payload, dict) or not payload.get('type'):
        raise ActionParseError(f'Action payload must be an object with a type, got {type(payload).__name__}')

    data = dict(payload)
    action_type = str(data['type']).strip().lower()
    data['type'] = LEGACY_ACTION_TYPES.get(action_type, action_type)
    if data['type'] not in ACTION_TYPES:
        raise ActionParseError(f'Unknown action type: {payload.get("type")}')

    if data['type'] == 'highlight':
        color = str(data.get('colorId') or data.get('color_id') or 'yellow').lower()
        if not (data.get('colorHex') or data.get('color_hex')) and color in HIGHLIGHT_COLORS:
            data['colorHex'] = HIGHLIGHT_COLORS[color]

    try:
        return _action_adapter.validate_python(data)
    except ValidationError as e:
        raise ActionParseError(f'Invalid {data["type"]} action: {e.error_count()} validation error(s)') from e


def action_to_dict(action: Action) -> Dict[str, Any]:
    """Serialize an action for storage or transport."""
    return action.model_dump(mode='json', by_alias=True, exclude_none=True)


@dataclass
class ActionResolution:
    """Result of resolving a command through the action cache."""
    action: Optional[Action]
    from_cache: bool
    similarity: Optional[float] = None
    entry_id: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.action is not None
