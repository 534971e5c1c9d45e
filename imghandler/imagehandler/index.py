import base64
import dataclasses
import os
from concurrent.futures import Future, ThreadPoolExecutor
from http import HTTPStatus
from logging import Logger
from typing import Any, Mapping, Optional, Tuple

import boto3
from botocore.config import Config
from mypy_boto3_dynamodb.client import DynamoDBClient
from mypy_boto3_rekognition.client import RekognitionClient
from mypy_boto3_s3.client import S3Client

from imghandler.imagehandler.detection import Detector
from imghandler.imagehandler.errors import ImageHandlerError, get_error_response
from imghandler.imagehandler.pipeline import (
    DEFAULT_QUALITY,
    AcceptHeader,
    EditPipeline,
    PipelineResult
)
from imghandler.imagehandler.request import (
    DEFAULT_CACHE_CONTROL,
    ImageFormat,
    ImageRequest,
    ObjectStore,
    RequestResolver,
    StoredObject,
    TenantActivation
)
from imghandler.jsonlog import init_logging
from imghandler.typing import (
    ExecutionResult,
    HttpPath,
    ImageHandlerEvent,
    S3Key
)

DEFAULT_REGION = 'us-east-1'
DEFAULT_DETECTION_TIMEOUT = 5.0

logger = init_logging(__name__)


def is_yes(s: Optional[str]) -> bool:
  return (s or '').strip().lower() == 'yes'


def config_error(message: str) -> ImageHandlerError:
  return ImageHandlerError(HTTPStatus.INTERNAL_SERVER_ERROR, 'ConfigError', message)


@dataclasses.dataclass(eq=True, frozen=True)
class Params:
  region: str
  source_buckets: tuple[str, ...]
  cors_enabled: bool
  cors_origin: str
  auto_webp: bool
  auto_avif: bool
  fallback_enabled: bool
  fallback_bucket: str
  fallback_key: str
  tenant_table_name: str
  detection_timeout: float
  default_quality: int

  @classmethod
  def from_env(cls, env: Mapping[str, str]) -> 'Params':
    buckets = tuple(b.strip() for b in env.get('SOURCE_BUCKETS', '').split(',') if b.strip() != '')
    if len(buckets) == 0:
      raise config_error('SOURCE_BUCKETS is not set')

    try:
      detection_timeout = float(env.get('DETECTION_TIMEOUT', DEFAULT_DETECTION_TIMEOUT))
      default_quality = int(env.get('DEFAULT_QUALITY', DEFAULT_QUALITY))
    except ValueError as e:
      raise config_error(str(e))

    return cls(
        region=env.get('AWS_REGION', DEFAULT_REGION),
        source_buckets=buckets,
        cors_enabled=is_yes(env.get('CORS_ENABLED')),
        cors_origin=env.get('CORS_ORIGIN', '*'),
        auto_webp=is_yes(env.get('AUTO_WEBP')),
        auto_avif=is_yes(env.get('AUTO_AVIF')),
        fallback_enabled=is_yes(env.get('ENABLE_DEFAULT_FALLBACK_IMAGE')),
        fallback_bucket=env.get('DEFAULT_FALLBACK_IMAGE_BUCKET', '').strip(),
        fallback_key=env.get('DEFAULT_FALLBACK_IMAGE_KEY', '').strip(),
        tenant_table_name=env.get('TENANT_TABLE_NAME', '').strip(),
        detection_timeout=detection_timeout,
        default_quality=default_quality)

  def auto_formats(self) -> list[ImageFormat]:
    # In order of preference.
    formats = []
    if self.auto_avif:
      formats.append(ImageFormat.AVIF)
    if self.auto_webp:
      formats.append(ImageFormat.WEBP)
    return formats


class ImageHandler:
  instances: dict[Params, 'ImageHandler'] = {}

  def __init__(
      self,
      log: Logger,
      params: Params,
      store: ObjectStore,
      detector: Detector,
      tenants: Optional[TenantActivation],
  ):
    self.log = log
    self.params = params
    self.store = store
    self.resolver = RequestResolver(log, store, list(params.source_buckets), tenants)
    self.pipeline = EditPipeline(
        log, store, detector, params.auto_formats(), default_quality=params.default_quality)
    self.log_context: dict[str, Any] = {'path': '', 'qs': {}}

  @classmethod
  def from_params(cls, log: Logger, params: Params) -> 'ImageHandler':
    if params not in cls.instances:
      s3: S3Client = boto3.client('s3', region_name=params.region)
      rekognition: RekognitionClient = boto3.client(
          'rekognition',
          region_name=params.region,
          config=Config(
              connect_timeout=params.detection_timeout,
              read_timeout=params.detection_timeout,
              retries={'max_attempts': 1}))

      tenants = None
      if params.tenant_table_name != '':
        dynamodb: DynamoDBClient = boto3.client('dynamodb', region_name=params.region)
        tenants = TenantActivation(log, dynamodb, params.tenant_table_name)

      cls.instances[params] = cls(
          log=log,
          params=params,
          store=ObjectStore(s3),
          detector=Detector(rekognition),
          tenants=tenants)

    return cls.instances[params]

  @classmethod
  def from_env(cls, log: Logger, env: Mapping[str, str]) -> 'ImageHandler':
    return cls.from_params(log, Params.from_env(env))

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def set_log_context(self, path: HttpPath, qs: Mapping[str, str]) -> None:
    self.log_context = {'path': str(path), 'qs': dict(qs)}

  def base_headers(self, is_alb: bool) -> dict[str, str | bool]:
    headers: dict[str, str | bool] = {
        'Access-Control-Allow-Methods': 'GET',
        'Access-Control-Allow-Headers': 'Content-Type, Authorization',
    }
    # ALB rejects non-string header values.
    if not is_alb:
      headers['Access-Control-Allow-Credentials'] = True
    if self.params.cors_enabled:
      headers['Access-Control-Allow-Origin'] = self.params.cors_origin
    return headers

  def handle(
      self,
      path: HttpPath,
      qs: Mapping[str, str],
      accept: AcceptHeader,
  ) -> Tuple[ImageRequest, PipelineResult]:
    parsed = self.resolver.parse(path, qs)
    self.resolver.check_tenant(parsed)

    overlay = parsed.edits.overlay()
    executor = ThreadPoolExecutor(max_workers=1)
    try:
      # The overlay does not depend on the base image, so fetch both at once.
      future: Optional[Future[StoredObject]] = None
      if overlay is not None:
        future = executor.submit(self.store.get, overlay.bucket, S3Key(overlay.key))

      try:
        request = self.resolver.fetch(parsed)
      except Exception:
        if future is not None:
          future.cancel()
        raise

      return request, self.pipeline.process(request, accept, future)
    finally:
      executor.shutdown(wait=False, cancel_futures=True)

  def fallback_result(
      self, status: int, headers: dict[str, str | bool]) -> Optional[ExecutionResult]:
    if not self.params.fallback_enabled:
      return None
    if self.params.fallback_bucket == '' or self.params.fallback_key == '':
      self.log_warning('fallback image is not configured', {})
      return None

    try:
      obj = self.store.get(self.params.fallback_bucket, S3Key(self.params.fallback_key))
    except Exception as e:
      self.log_error('failed to get fallback image', {'reason': str(e)})
      return None

    fallback_headers = {
        **headers,
        'Content-Type': obj.content_type or 'image/jpeg',
        'Cache-Control': DEFAULT_CACHE_CONTROL,
    }
    if obj.last_modified is not None:
      fallback_headers['Last-Modified'] = obj.last_modified

    return {
        'statusCode': status,
        'isBase64Encoded': True,
        'headers': fallback_headers,
        'body': base64.b64encode(obj.body).decode('ascii'),
    }

  def error_result(self, e: Exception, headers: dict[str, str | bool]) -> ExecutionResult:
    if isinstance(e, ImageHandlerError) and e.status < HTTPStatus.INTERNAL_SERVER_ERROR:
      self.log_warning('request failed', {'status': e.status, 'code': e.code, 'reason': e.message})
    else:
      self.log_error('request failed', {'type': type(e).__name__, 'reason': str(e)})

    status, body = get_error_response(e)

    fallback = self.fallback_result(status, headers)
    if fallback is not None:
      self.log_debug('responded with fallback', {'status': status})
      return fallback

    return {
        'statusCode': status,
        'isBase64Encoded': False,
        'headers': {
            **headers,
            'Content-Type': 'application/json',
        },
        'body': body,
    }

  def process(self, event: ImageHandlerEvent) -> ExecutionResult:
    path = HttpPath(event.get('rawPath') or event.get('path') or '/')
    qs = event.get('queryStringParameters') or {}
    req_headers = {k.lower(): v for k, v in (event.get('headers') or {}).items()}
    is_alb = 'elb' in (event.get('requestContext') or {})

    self.set_log_context(path, qs)
    headers = self.base_headers(is_alb)

    try:
      request, result = self.handle(path, qs, AcceptHeader.from_str(req_headers.get('accept', '')))
    except Exception as e:
      return self.error_result(e, headers)

    self.log_debug(
        'responded', {
            'bucket': request.parsed.bucket,
            'key': request.parsed.full_key,
            'content_type': result.content_type,
            'width': result.width,
            'height': result.height,
            'img_size': len(result.body),
            'vips_us': result.vips_us,
        })

    return {
        'statusCode': HTTPStatus.OK,
        'isBase64Encoded': True,
        'headers': {
            **headers,
            **request.response_headers(result.content_type),
        },
        'body': base64.b64encode(result.body).decode('ascii'),
    }


def lambda_main(event: ImageHandlerEvent) -> ExecutionResult:
  try:
    handler = ImageHandler.from_env(logger, os.environ)
  except ImageHandlerError as e:
    logger.warning({'message': 'invalid configuration', 'reason': e.message})
    status, body = get_error_response(e)
    return {
        'statusCode': status,
        'isBase64Encoded': False,
        'headers': {
            'Content-Type': 'application/json'
        },
        'body': body,
    }

  return handler.process(event)
