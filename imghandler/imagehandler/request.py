import base64
import binascii
import dataclasses
import datetime
import json
import re
from email.utils import format_datetime
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Mapping, Optional, Self
from urllib import parse

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_dynamodb.client import DynamoDBClient
from mypy_boto3_s3.client import S3Client

from imghandler.imagehandler.edits import EditSpecification, invalid, to_int
from imghandler.imagehandler.errors import ImageHandlerError, not_found
from imghandler.typing import HttpPath, S3Key

DEFAULT_CACHE_CONTROL = 'max-age=31536000,public'

# Verified at the edge; never treated as edits.
RESERVED_PARAMS = ['signature', 'expires']

base64_path_re = re.compile(r'^[0-9a-zA-Z+/_-]+={0,2}$')

OCTET_STREAM_TYPES = ['binary/octet-stream', 'application/octet-stream']


class ImageFormat(Enum):
  JPEG = 'jpeg'
  PNG = 'png'
  WEBP = 'webp'
  AVIF = 'avif'
  GIF = 'gif'
  TIFF = 'tiff'

  @classmethod
  def parse(cls, s: Any) -> 'ImageFormat':
    if s == 'jpg':
      return cls.JPEG
    try:
      return cls(s)
    except ValueError:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'OutputFormat::Unsupported',
          f'The output format "{s}" is not supported.')

  @classmethod
  def maybe_from_content_type(cls, content_type: str) -> Optional['ImageFormat']:
    for f in cls:
      if f.content_type() == content_type:
        return f
    return None

  @classmethod
  def maybe_from_loader(cls, loader: str) -> Optional['ImageFormat']:
    # e.g. 'jpegload_buffer', 'heifload_buffer'
    name = loader.split('load', 1)[0]
    if name == 'heif':
      return cls.AVIF
    try:
      return cls(name)
    except ValueError:
      return None

  @classmethod
  def maybe_from_magic(cls, data: bytes) -> Optional['ImageFormat']:
    if data.startswith(b'\xff\xd8\xff'):
      return cls.JPEG
    if data.startswith(b'\x89PNG\r\n\x1a\n'):
      return cls.PNG
    if data[:4] == b'RIFF' and data[8:12] == b'WEBP':
      return cls.WEBP
    if data[4:12] in [b'ftypavif', b'ftypavis']:
      return cls.AVIF
    if data.startswith(b'GIF87a') or data.startswith(b'GIF89a'):
      return cls.GIF
    if data.startswith(b'II*\x00') or data.startswith(b'MM\x00*'):
      return cls.TIFF
    return None

  def extension(self) -> str:
    if self == ImageFormat.JPEG:
      return '.jpg'
    return f'.{self.value}'

  def content_type(self) -> str:
    return f'image/{self.value}'

  def is_lossy(self) -> bool:
    return self in [ImageFormat.JPEG, ImageFormat.WEBP, ImageFormat.AVIF, ImageFormat.TIFF]


def http_date(dt: Optional[datetime.datetime]) -> Optional[str]:
  if dt is None:
    return None
  return format_datetime(dt.astimezone(datetime.UTC), usegmt=True)


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


@dataclasses.dataclass(frozen=True)
class StoredObject:
  body: bytes
  content_type: Optional[str]
  cache_control: Optional[str]
  expires: Optional[str]
  last_modified: Optional[str]


class ObjectStore:

  def __init__(self, s3: S3Client):
    self.s3 = s3

  def get(self, bucket: str, key: S3Key) -> StoredObject:
    try:
      res = self.s3.get_object(Bucket=bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        raise not_found(key)
      raise ImageHandlerError(
          HTTPStatus.INTERNAL_SERVER_ERROR,
          e.response.get('Error', {}).get('Code', 'InternalError'), str(e))

    expires = res.get('ExpiresString')
    if expires is None:
      expires = http_date(res.get('Expires'))

    return StoredObject(
        body=res['Body'].read(),
        content_type=res.get('ContentType'),
        cache_control=res.get('CacheControl'),
        expires=expires,
        last_modified=http_date(res.get('LastModified')))


class TenantActivation:
  """Reads whether a tenant is active.

  Absent records, malformed records and any transport failure all count as
  inactive.
  """

  def __init__(self, log: Logger, dynamodb: DynamoDBClient, table_name: str):
    self.log = log
    self.dynamodb = dynamodb
    self.table_name = table_name

  def is_active(self, tenant_id: Optional[str]) -> bool:
    if not tenant_id:
      return False

    try:
      res = self.dynamodb.get_item(
          TableName=self.table_name,
          Key={
              'appId': {
                  'S': tenant_id
              },
              'sk': {
                  'S': f'Setting#{tenant_id}'
              },
          })
    except (BotoCoreError, ClientError) as e:
      self.log.error({
          'message': 'failed to read tenant activation',
          'tenant_id': tenant_id,
          'reason': str(e),
      })
      return False

    item = res.get('Item')
    if item is None:
      self.log.debug({'message': 'tenant setting not found', 'tenant_id': tenant_id})
      return False

    return item.get('status', {}).get('S') == 'active'


@dataclasses.dataclass(frozen=True)
class ParsedRequest:
  bucket: str
  key: S3Key
  tenant_id: Optional[str]
  edits: EditSpecification
  output_format: Optional[ImageFormat]
  quality: Optional[int]
  headers: tuple[tuple[str, str], ...]

  @property
  def full_key(self) -> S3Key:
    if self.tenant_id:
      return S3Key(f'{self.tenant_id}/{self.key}')
    return self.key


@dataclasses.dataclass(frozen=True)
class ImageRequest:
  parsed: ParsedRequest
  original_image: bytes
  content_type: str
  cache_control: str
  expires: Optional[str]
  last_modified: Optional[str]

  @classmethod
  def from_stored(cls, parsed: ParsedRequest, obj: StoredObject) -> Self:
    content_type = obj.content_type
    if content_type is None or content_type in OCTET_STREAM_TYPES:
      f = ImageFormat.maybe_from_magic(obj.body)
      if f is not None:
        content_type = f.content_type()

    return cls(
        parsed=parsed,
        original_image=obj.body,
        content_type=content_type or OCTET_STREAM_TYPES[0],
        cache_control=obj.cache_control or DEFAULT_CACHE_CONTROL,
        expires=obj.expires,
        last_modified=obj.last_modified)

  def response_headers(self, content_type: str) -> dict[str, str]:
    headers = {'Content-Type': content_type}
    if self.expires is not None:
      headers['Expires'] = self.expires
    if self.last_modified is not None:
      headers['Last-Modified'] = self.last_modified
    headers['Cache-Control'] = self.cache_control

    # Request-supplied headers win.
    headers.update(self.parsed.headers)
    return headers


def cannot_decode() -> ImageHandlerError:
  return ImageHandlerError(
      HTTPStatus.BAD_REQUEST, 'DecodeRequest::CannotDecodeRequest',
      'The image request you provided could not be decoded. Please check that your request is '
      'base64 encoded properly and refer to the documentation for additional guidance.')


def parse_headers(value: Any) -> tuple[tuple[str, str], ...]:
  if value is None:
    return ()
  if not isinstance(value, Mapping) or not all(
      isinstance(k, str) and isinstance(v, str) for k, v in value.items()):
    raise invalid('headers', value)
  return tuple(value.items())


def parse_quality(value: Any) -> Optional[int]:
  if value is None:
    return None
  q = to_int('quality', value, 1)
  if 100 < q:
    raise invalid('quality', value)
  return q


def is_base64_path(path: HttpPath) -> bool:
  return base64_path_re.match(path.lstrip('/')) is not None


def decode_base64_path(path: HttpPath) -> Optional[dict[str, Any]]:
  """Returns the JSON object encoded in the path, or None if the path does not carry one.

  Extensionless keys such as ``dir/test`` look like base64 too, so a path that
  does not decode to a JSON object is left to the plain-path front end.
  """
  if not is_base64_path(path):
    return None

  s = path.lstrip('/').replace('-', '+').replace('_', '/')
  s += '=' * (-len(s) % 4)
  try:
    payload = json.loads(base64.b64decode(s, validate=True).decode('utf-8'))
  except (binascii.Error, UnicodeDecodeError, ValueError):
    return None
  if not isinstance(payload, dict):
    return None
  return payload


def parse_base64_payload(payload: dict[str, Any], default_bucket: str) -> ParsedRequest:
  key = payload.get('key')
  if not isinstance(key, str) or key == '':
    raise cannot_decode()

  bucket = payload.get('bucket') or default_bucket
  tenant_id = payload.get('appId')
  if not isinstance(bucket, str) or (tenant_id is not None and not isinstance(tenant_id, str)):
    raise cannot_decode()

  output_format = payload.get('outputFormat')

  return ParsedRequest(
      bucket=bucket,
      key=S3Key(key),
      tenant_id=tenant_id or None,
      edits=EditSpecification.parse(payload.get('edits')),
      output_format=None if output_format is None else ImageFormat.parse(output_format),
      quality=parse_quality(payload.get('quality')),
      headers=parse_headers(payload.get('headers')))


# Query parameters mapped onto the edits mapping shared with the base64 encoding.
SIMPLE_EDIT_PARAMS = ['rotate', 'flip', 'flop', 'grayscale', 'negate', 'blur', 'sharpen']
RESIZE_PARAMS = {'width': 'width', 'height': 'height', 'fit': 'fit', 'background': 'background'}
OVERLAY_PARAMS = {
    'overlayBucket': 'bucket',
    'overlayKey': 'key',
    'overlayWidthRatio': 'wRatio',
    'overlayHeightRatio': 'hRatio',
    'overlayAlpha': 'alpha',
}
OVERLAY_POSITION_PARAMS = {'overlayLeft': 'left', 'overlayTop': 'top'}
REQUEST_PARAMS = ['bucket', 'appId', 'format', 'quality']
# Flag values that switch an edit on or off rather than configure it.
FLAG_VALUES = ['true', 'false', '1', '0', '']


def edits_from_query(qs: Mapping[str, str]) -> dict[str, Any]:
  edits: dict[str, Any] = {}

  resize = {RESIZE_PARAMS[k]: v for k, v in qs.items() if k in RESIZE_PARAMS}
  if resize:
    edits['resize'] = resize

  if 'crop' in qs:
    parts = qs['crop'].split(',')
    if len(parts) != 4:
      raise invalid('crop', qs['crop'])
    edits['crop'] = dict(zip(['left', 'top', 'width', 'height'], parts))

  for name in SIMPLE_EDIT_PARAMS:
    if name in qs:
      edits[name] = qs[name]

  overlay: dict[str, Any] = {OVERLAY_PARAMS[k]: v for k, v in qs.items() if k in OVERLAY_PARAMS}
  options = {
      OVERLAY_POSITION_PARAMS[k]: v for k, v in qs.items() if k in OVERLAY_POSITION_PARAMS
  }
  if options:
    overlay['options'] = options
  if overlay:
    edits['overlayWith'] = overlay

  if 'smartCrop' in qs or 'smartCropPadding' in qs:
    value = qs.get('smartCrop', 'true')
    if value.lower() in ['false', '0']:
      edits['smartCrop'] = False
    else:
      smart_crop: dict[str, Any] = {}
      if value.isdigit():
        smart_crop['faceIndex'] = value
      if 'smartCropPadding' in qs:
        smart_crop['padding'] = qs['smartCropPadding']
      edits['smartCrop'] = smart_crop

  if 'contentModeration' in qs:
    value = qs['contentModeration']
    if value.lower() in FLAG_VALUES:
      edits['contentModeration'] = value
    else:
      try:
        edits['contentModeration'] = {'minConfidence': float(value)}
      except ValueError:
        edits['contentModeration'] = value

  return edits


def known_query_params() -> set[str]:
  return set(
      SIMPLE_EDIT_PARAMS + list(RESIZE_PARAMS) + list(OVERLAY_PARAMS) +
      list(OVERLAY_POSITION_PARAMS) + REQUEST_PARAMS + RESERVED_PARAMS +
      ['crop', 'smartCrop', 'smartCropPadding', 'contentModeration'])


def parse_plain_path(path: HttpPath, qs: Mapping[str, str], default_bucket: str) -> ParsedRequest:
  key = parse.unquote(path.lstrip('/'))
  if key == '':
    raise cannot_decode()

  unknown = sorted(set(qs) - known_query_params())
  if unknown:
    raise ImageHandlerError(
        HTTPStatus.BAD_REQUEST, 'ImageEdits::UnknownEdit',
        f'The edit "{unknown[0]}" is not supported.')

  output_format = qs.get('format')

  return ParsedRequest(
      bucket=qs.get('bucket') or default_bucket,
      key=S3Key(key),
      tenant_id=qs.get('appId') or None,
      edits=EditSpecification.parse(edits_from_query(qs)),
      output_format=None if output_format is None else ImageFormat.parse(output_format),
      quality=parse_quality(qs.get('quality')),
      headers=())


class RequestResolver:

  def __init__(
      self,
      log: Logger,
      store: ObjectStore,
      source_buckets: list[str],
      tenants: Optional[TenantActivation],
  ):
    self.log = log
    self.store = store
    self.source_buckets = source_buckets
    self.tenants = tenants

  def parse(self, path: HttpPath, qs: Mapping[str, str]) -> ParsedRequest:
    payload = decode_base64_path(path)
    if payload is not None:
      parsed = parse_base64_payload(payload, self.source_buckets[0])
    else:
      parsed = parse_plain_path(path, qs, self.source_buckets[0])

    overlay = parsed.edits.overlay()
    for bucket in [parsed.bucket] + ([] if overlay is None else [overlay.bucket]):
      if bucket not in self.source_buckets:
        raise ImageHandlerError(
            HTTPStatus.FORBIDDEN, 'ImageBucket::CannotAccessBucket',
            'The bucket you specified could not be accessed. Please check that the bucket is '
            'specified in your SOURCE_BUCKETS.')

    return parsed

  def check_tenant(self, parsed: ParsedRequest) -> None:
    if self.tenants is None:
      return
    if not self.tenants.is_active(parsed.tenant_id):
      # Same answer as a missing object.
      raise not_found(parsed.key)

  def fetch(self, parsed: ParsedRequest) -> ImageRequest:
    try:
      obj = self.store.get(parsed.bucket, parsed.full_key)
    except ImageHandlerError as e:
      # Name the key the caller asked for, not the tenant-scoped one.
      if e.status == HTTPStatus.NOT_FOUND:
        raise not_found(parsed.key)
      raise
    return ImageRequest.from_stored(parsed, obj)
