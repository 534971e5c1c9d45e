import dataclasses
from enum import Enum
from http import HTTPStatus
from typing import Any, Mapping, Optional, Self

from imghandler.imagehandler.errors import ImageHandlerError

UNKNOWN_EDIT = 'ImageEdits::UnknownEdit'
INVALID_EDIT = 'ImageEdits::InvalidEdit'

DEFAULT_MIN_CONFIDENCE = 75.0
DEFAULT_MODERATION_BLUR = 50.0


class Fit(Enum):
  COVER = 'cover'
  CONTAIN = 'contain'
  FILL = 'fill'
  INSIDE = 'inside'
  OUTSIDE = 'outside'


def invalid(name: str, value: Any) -> ImageHandlerError:
  return ImageHandlerError(
      HTTPStatus.BAD_REQUEST, INVALID_EDIT, f'The edit "{name}" has an invalid value: {value!r}')


def to_int(name: str, value: Any, minimum: Optional[int] = None) -> int:
  if isinstance(value, bool):
    raise invalid(name, value)
  try:
    i = int(value)
  except (TypeError, ValueError):
    raise invalid(name, value)
  if isinstance(value, float) and value != i:
    raise invalid(name, value)
  if minimum is not None and i < minimum:
    raise invalid(name, value)
  return i


def to_float(name: str, value: Any, minimum: Optional[float] = None) -> float:
  if isinstance(value, bool):
    raise invalid(name, value)
  try:
    f = float(value)
  except (TypeError, ValueError):
    raise invalid(name, value)
  if minimum is not None and f < minimum:
    raise invalid(name, value)
  return f


def to_bool(name: str, value: Any) -> bool:
  if isinstance(value, bool):
    return value
  if isinstance(value, str) and value.lower() in ['true', '1', '']:
    return True
  if isinstance(value, str) and value.lower() in ['false', '0']:
    return False
  raise invalid(name, value)


def to_mapping(name: str, value: Any) -> Mapping[str, Any]:
  if not isinstance(value, Mapping):
    raise invalid(name, value)
  return value


def to_color(name: str, value: Any) -> Optional[tuple[float, ...]]:
  if value is None:
    return None
  if isinstance(value, str):
    value = value.split(',')
  if not isinstance(value, (list, tuple)) or not 1 <= len(value) <= 4:
    raise invalid(name, value)
  return tuple(to_float(name, v, 0.0) for v in value)


@dataclasses.dataclass(frozen=True)
class Crop:
  left: int
  top: int
  width: int
  height: int

  @classmethod
  def parse(cls, value: Any) -> Self:
    m = to_mapping('crop', value)
    try:
      return cls(
          left=to_int('crop', m['left'], 0),
          top=to_int('crop', m['top'], 0),
          width=to_int('crop', m['width'], 1),
          height=to_int('crop', m['height'], 1))
    except KeyError:
      raise invalid('crop', value)


@dataclasses.dataclass(frozen=True)
class Resize:
  width: Optional[int]
  height: Optional[int]
  fit: Fit = Fit.COVER
  background: Optional[tuple[float, ...]] = None

  @classmethod
  def parse(cls, value: Any) -> Self:
    m = to_mapping('resize', value)
    width = None if m.get('width') is None else to_int('resize', m['width'], 1)
    height = None if m.get('height') is None else to_int('resize', m['height'], 1)
    if width is None and height is None:
      raise invalid('resize', value)
    try:
      fit = Fit(m.get('fit', Fit.COVER.value))
    except ValueError:
      raise invalid('resize', value)
    return cls(width, height, fit, to_color('resize', m.get('background')))


@dataclasses.dataclass(frozen=True)
class Rotate:
  # None means orienting the image by its EXIF tag.
  angle: Optional[float]

  @classmethod
  def parse(cls, value: Any) -> Self:
    if value is None or (isinstance(value, str) and value.lower() in ['auto', 'null']):
      return cls(None)
    return cls(to_float('rotate', value))


@dataclasses.dataclass(frozen=True)
class Flip:
  pass


@dataclasses.dataclass(frozen=True)
class Flop:
  pass


@dataclasses.dataclass(frozen=True)
class Overlay:
  bucket: str
  key: str
  w_ratio: Optional[float] = None
  h_ratio: Optional[float] = None
  alpha: Optional[float] = None
  left: Optional[str] = None
  top: Optional[str] = None

  @classmethod
  def parse(cls, value: Any) -> Self:
    m = to_mapping('overlayWith', value)
    bucket = m.get('bucket')
    key = m.get('key')
    if not isinstance(bucket, str) or bucket == '' or not isinstance(key, str) or key == '':
      raise invalid('overlayWith', value)

    def ratio(name: str) -> Optional[float]:
      if m.get(name) is None:
        return None
      r = to_float('overlayWith', m[name], 0.0)
      if r == 0.0 or 100.0 < r:
        raise invalid('overlayWith', value)
      return r

    alpha = None if m.get('alpha') is None else to_float('overlayWith', m['alpha'], 0.0)
    if alpha is not None and 100.0 < alpha:
      raise invalid('overlayWith', value)

    options = to_mapping('overlayWith', m.get('options') or {})
    left = options.get('left')
    top = options.get('top')
    for pos in [left, top]:
      if pos is not None and parse_position(pos) is None:
        raise invalid('overlayWith', value)

    return cls(
        bucket=bucket,
        key=key,
        w_ratio=ratio('wRatio'),
        h_ratio=ratio('hRatio'),
        alpha=alpha,
        left=None if left is None else str(left),
        top=None if top is None else str(top))


@dataclasses.dataclass(frozen=True)
class SmartCrop:
  face_index: int = 0
  padding: int = 0

  @classmethod
  def parse(cls, value: Any) -> Optional[Self]:
    if isinstance(value, bool) or isinstance(value, str):
      return cls() if to_bool('smartCrop', value) else None
    m = to_mapping('smartCrop', value)
    return cls(
        face_index=to_int('smartCrop', m.get('faceIndex', 0), 0),
        padding=to_int('smartCrop', m.get('padding', 0), 0))


@dataclasses.dataclass(frozen=True)
class ContentModeration:
  min_confidence: float = DEFAULT_MIN_CONFIDENCE
  blur: float = DEFAULT_MODERATION_BLUR
  labels: tuple[str, ...] = ()

  @classmethod
  def parse(cls, value: Any) -> Optional[Self]:
    if isinstance(value, bool) or isinstance(value, str):
      return cls() if to_bool('contentModeration', value) else None
    m = to_mapping('contentModeration', value)
    labels = m.get('moderationLabels', [])
    if not isinstance(labels, list) or not all(isinstance(label, str) for label in labels):
      raise invalid('contentModeration', value)
    min_confidence = to_float(
        'contentModeration', m.get('minConfidence', DEFAULT_MIN_CONFIDENCE), 0.0)
    if 100.0 < min_confidence:
      raise invalid('contentModeration', value)
    return cls(
        min_confidence=min_confidence,
        blur=to_float('contentModeration', m.get('blur', DEFAULT_MODERATION_BLUR), 0.3),
        labels=tuple(labels))


@dataclasses.dataclass(frozen=True)
class Grayscale:
  pass


@dataclasses.dataclass(frozen=True)
class Negate:
  pass


@dataclasses.dataclass(frozen=True)
class Blur:
  sigma: float

  @classmethod
  def parse(cls, value: Any) -> Self:
    sigma = to_float('blur', value)
    # Same lower bound as sharp.
    if sigma < 0.3 or 1000.0 < sigma:
      raise invalid('blur', value)
    return cls(sigma)


@dataclasses.dataclass(frozen=True)
class Sharpen:
  sigma: Optional[float] = None

  @classmethod
  def parse(cls, value: Any) -> Optional[Self]:
    if isinstance(value, bool) or (isinstance(value, str) and not is_number(value)):
      return cls() if to_bool('sharpen', value) else None
    return cls(to_float('sharpen', value, 0.000001))


Edit = (
    Crop | Resize | Rotate | Flip | Flop | Overlay | SmartCrop | ContentModeration | Grayscale
    | Negate | Blur | Sharpen)

# Edits are always evaluated in this order.
EDIT_ORDER: list[type] = [
    Crop,
    Resize,
    Rotate,
    Flip,
    Flop,
    Overlay,
    SmartCrop,
    ContentModeration,
    Grayscale,
    Negate,
    Blur,
    Sharpen,
]


def is_number(s: str) -> bool:
  try:
    float(s)
  except ValueError:
    return False
  return True


def parse_position(value: Any) -> Optional[tuple[float, bool]]:
  """Splits an overlay position into its number and whether it is a percentage.

  Accepts a bare signed number (pixels) or a signed number followed by ``p``
  (percent of the base image).
  """
  if isinstance(value, bool):
    return None
  if isinstance(value, (int, float)):
    return (float(value), False)
  if not isinstance(value, str):
    return None

  s = value.strip()
  percent = s.endswith('p')
  if percent:
    s = s[:-1]
  try:
    return (float(s), percent)
  except ValueError:
    return None


def parse_flag(
    name: str, cls: type[Flip | Flop | Grayscale | Negate], value: Any) -> Optional[Edit]:
  return cls() if to_bool(name, value) else None


PARSERS: dict[str, Any] = {
    'crop': Crop.parse,
    'extract': Crop.parse,
    'resize': Resize.parse,
    'rotate': Rotate.parse,
    'flip': lambda v: parse_flag('flip', Flip, v),
    'flop': lambda v: parse_flag('flop', Flop, v),
    'overlayWith': Overlay.parse,
    'smartCrop': SmartCrop.parse,
    'contentModeration': ContentModeration.parse,
    'grayscale': lambda v: parse_flag('grayscale', Grayscale, v),
    'greyscale': lambda v: parse_flag('greyscale', Grayscale, v),
    'negate': lambda v: parse_flag('negate', Negate, v),
    'blur': Blur.parse,
    'sharpen': Sharpen.parse,
}


@dataclasses.dataclass(frozen=True)
class EditSpecification:
  # Always held in evaluation order.
  edits: tuple[Edit, ...] = ()

  @classmethod
  def parse(cls, edits: Optional[Mapping[str, Any]]) -> Self:
    if edits is None:
      return cls()
    if not isinstance(edits, Mapping):
      raise invalid('edits', edits)

    parsed: dict[type, Edit] = {}
    for name, value in edits.items():
      if name not in PARSERS:
        raise ImageHandlerError(
            HTTPStatus.BAD_REQUEST, UNKNOWN_EDIT, f'The edit "{name}" is not supported.')
      edit = PARSERS[name](value)
      if edit is not None:
        parsed[type(edit)] = edit

    return cls(tuple(sorted(parsed.values(), key=lambda e: EDIT_ORDER.index(type(e)))))

  def __bool__(self) -> bool:
    return len(self.edits) != 0

  def overlay(self) -> Optional[Overlay]:
    for e in self.edits:
      if isinstance(e, Overlay):
        return e
    return None
