import base64
import json
import logging
from logging import Logger
from typing import Any, Generator, Optional

import boto3
import pytest
from pyvips import Image  # type: ignore

from imghandler import signing
from imghandler.typing import ImageHandlerEvent, S3Key

from . import index
from .detection import Detector
from .errors import GENERIC_MESSAGE, OVERLAY_MESSAGE, ImageHandlerError
from .index import ImageHandler, Params
from .request import DEFAULT_CACHE_CONTROL, ImageFormat, StoredObject
from .test_request import FakeStore, FakeTenants

REGION = 'us-east-1'
BUCKET = 'source-bucket'
FALLBACK_BUCKET = 'fallback-bucket'
FALLBACK_KEY = 'fallback.png'

API_HEADERS = {
    'Access-Control-Allow-Methods': 'GET',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
    'Access-Control-Allow-Credentials': True,
}

NOT_FOUND_BODY = {
    'status': 404,
    'code': 'NoSuchKey',
    'message':
        'The image test.jpg does not exist or the request may not be base64 encoded properly.',
}


def make_image(width: int, height: int, color: list[int]) -> Image:
  return (Image.black(width, height, bands=len(color)) + color).cast('uchar').copy(
      interpretation='srgb')


JPEG = make_image(40, 20, [0, 128, 255]).write_to_buffer('.jpg')
PNG = make_image(40, 20, [0, 128, 255]).write_to_buffer('.png')
FALLBACK = make_image(4, 4, [128, 128, 128]).write_to_buffer('.png')
LOGO = make_image(10, 10, [255, 0, 0, 255]).write_to_buffer('.png')
HUGE_LOGO = make_image(50, 50, [255, 0, 0, 255]).write_to_buffer('.png')


def stored(
    body: bytes,
    content_type: Optional[str],
    cache_control: Optional[str] = None,
    last_modified: Optional[str] = None,
) -> StoredObject:
  return StoredObject(
      body=body,
      content_type=content_type,
      cache_control=cache_control,
      expires=None,
      last_modified=last_modified)


class BrokenStore(FakeStore):

  def get(self, bucket: str, key: S3Key) -> StoredObject:
    if key == 'broken.jpg':
      raise RuntimeError('connection reset')
    return super().get(bucket, key)


@pytest.fixture
def logger() -> Logger:
  return logging.getLogger(__name__)


@pytest.fixture
def store() -> FakeStore:
  return BrokenStore({
      (BUCKET, 'test.jpg'): stored(
          JPEG, 'image/jpeg', last_modified='Wed, 21 Oct 2015 07:28:00 GMT'),
      (BUCKET, 'test.png'): stored(PNG, 'image/png', cache_control='max-age=60'),
      (BUCKET, 'tenant1/test.jpg'): stored(JPEG, 'image/jpeg'),
      (BUCKET, 'logo.png'): stored(LOGO, 'image/png'),
      (BUCKET, 'huge-logo.png'): stored(HUGE_LOGO, 'image/png'),
      (FALLBACK_BUCKET, FALLBACK_KEY): stored(FALLBACK, 'image/png'),
  })


@pytest.fixture
def env(request: Any) -> dict[str, str]:
  return {
      'SOURCE_BUCKETS': f'{BUCKET}, {FALLBACK_BUCKET}',
      'AWS_REGION': REGION,
      **getattr(request, 'param', {}),
  }


@pytest.fixture
def handler(
    logger: Logger,
    store: FakeStore,
    env: dict[str, str],
) -> ImageHandler:
  rekognition = boto3.client(
      'rekognition',
      region_name=REGION,
      aws_access_key_id='testing',
      aws_secret_access_key='testing')
  return ImageHandler(logger, Params.from_env(env), store, Detector(rekognition), None)


def create_event(
    path: str,
    qs: Optional[dict[str, str]] = None,
    headers: Optional[dict[str, str]] = None,
    alb: bool = False,
) -> ImageHandlerEvent:
  event: ImageHandlerEvent = {
      'rawPath': path,
      'queryStringParameters': qs,
      'headers': headers or {},
      'requestContext': {},
  }
  if alb:
    event = {
        'path': path,
        'queryStringParameters': qs or {},
        'headers': headers or {},
        'requestContext': {
            'elb': {
                'targetGroupArn': 'arn:aws:elasticloadbalancing:us-east-1:123456789012:tg'
            }
        },
    }
  return event


def test_params_defaults() -> None:
  assert Params(
      region='us-east-1',
      source_buckets=(BUCKET,),
      cors_enabled=False,
      cors_origin='*',
      auto_webp=False,
      auto_avif=False,
      fallback_enabled=False,
      fallback_bucket='',
      fallback_key='',
      tenant_table_name='',
      detection_timeout=5.0,
      default_quality=80) == Params.from_env({'SOURCE_BUCKETS': BUCKET})


@pytest.mark.parametrize(
    'env', [
        {},
        {
            'SOURCE_BUCKETS': ' , '
        },
        {
            'SOURCE_BUCKETS': BUCKET,
            'DETECTION_TIMEOUT': 'soon'
        },
        {
            'SOURCE_BUCKETS': BUCKET,
            'DEFAULT_QUALITY': 'best'
        },
    ],
    ids=['missing', 'blank', 'bad_timeout', 'bad_quality'])
def test_params_invalid(env: dict[str, str]) -> None:
  with pytest.raises(ImageHandlerError) as e:
    Params.from_env(env)

  assert 'ConfigError' == e.value.code


@pytest.mark.parametrize(
    'env,expected', [
        ({}, []),
        ({
            'AUTO_WEBP': 'Yes'
        }, [ImageFormat.WEBP]),
        ({
            'AUTO_WEBP': 'yes',
            'AUTO_AVIF': 'Yes'
        }, [ImageFormat.AVIF, ImageFormat.WEBP]),
    ],
    ids=['none', 'webp', 'both'])
def test_auto_formats(env: dict[str, str], expected: list[ImageFormat]) -> None:
  assert expected == Params.from_env({'SOURCE_BUCKETS': BUCKET, **env}).auto_formats()


@pytest.mark.parametrize(
    'path', [
        signing.encode_payload({'key': 'test.jpg'}),
        '/test.jpg',
    ], ids=['base64', 'plain'])
def test_original(handler: ImageHandler, path: str) -> None:
  res = handler.process(create_event(path))

  assert 200 == res['statusCode']
  assert res['isBase64Encoded']
  assert JPEG == base64.b64decode(res['body'])
  assert {
      **API_HEADERS,
      'Content-Type': 'image/jpeg',
      'Last-Modified': 'Wed, 21 Oct 2015 07:28:00 GMT',
      'Cache-Control': DEFAULT_CACHE_CONTROL,
  } == res['headers']


def test_edited(handler: ImageHandler) -> None:
  res = handler.process(create_event('/test.png', {'width': '20', 'format': 'jpeg'}))

  assert 200 == res['statusCode']
  assert 'image/jpeg' == res['headers']['Content-Type']
  assert 'max-age=60' == res['headers']['Cache-Control']

  image = Image.new_from_buffer(base64.b64decode(res['body']), '')
  assert (20, 10) == (image.width, image.height)


@pytest.mark.parametrize('env', [{'AUTO_WEBP': 'Yes'}], indirect=True, ids=['auto_webp'])
def test_auto_webp(handler: ImageHandler) -> None:
  res = handler.process(
      create_event('/test.png', {'width': '20'}, {'Accept': 'image/webp,image/*,*/*;q=0.8'}))

  assert 200 == res['statusCode']
  assert 'image/webp' == res['headers']['Content-Type']


def test_custom_headers(handler: ImageHandler) -> None:
  path = signing.encode_payload({
      'key': 'test.jpg',
      'headers': {
          'Cache-Control': 'max-age=10',
          'X-Robots-Tag': 'noindex'
      },
  })
  res = handler.process(create_event(path))

  assert 'max-age=10' == res['headers']['Cache-Control']
  assert 'noindex' == res['headers']['X-Robots-Tag']


def test_not_found(handler: ImageHandler) -> None:
  res = handler.process(create_event(signing.encode_payload({'key': 'missing/test.jpg'})))

  assert 404 == res['statusCode']
  assert not res['isBase64Encoded']
  assert 'application/json' == res['headers']['Content-Type']
  assert {
      **NOT_FOUND_BODY,
      'message': NOT_FOUND_BODY['message'].replace('test.jpg', 'missing/test.jpg'),
  } == json.loads(res['body'])


def test_overlay_too_large(handler: ImageHandler) -> None:
  path = signing.encode_payload({
      'key': 'test.png',
      'edits': {
          'overlayWith': {
              'bucket': BUCKET,
              'key': 'huge-logo.png'
          }
      },
  })
  res = handler.process(create_event(path))

  assert 400 == res['statusCode']
  assert {
      'status': 400,
      'code': 'BadRequest',
      'message': OVERLAY_MESSAGE,
  } == json.loads(res['body'])


def test_overlay(handler: ImageHandler) -> None:
  res = handler.process(
      create_event(
          '/test.png', {
              'overlayBucket': BUCKET,
              'overlayKey': 'logo.png',
              'overlayLeft': '0',
              'overlayTop': '0',
          }))

  assert 200 == res['statusCode']
  image = Image.new_from_buffer(base64.b64decode(res['body']), '')
  assert (40, 20) == (image.width, image.height)
  assert [255.0, 0.0, 0.0] == image(0, 0)


def test_overlay_missing_base(handler: ImageHandler, store: FakeStore) -> None:
  res = handler.process(
      create_event('/missing.png', {
          'overlayBucket': BUCKET,
          'overlayKey': 'logo.png'
      }))

  assert 404 == res['statusCode']
  assert (BUCKET, 'missing.png') in store.requested


def test_server_error(handler: ImageHandler) -> None:
  res = handler.process(create_event('/broken.jpg'))

  assert 500 == res['statusCode']
  assert {
      'status': 500,
      'code': 'InternalError',
      'message': GENERIC_MESSAGE,
  } == json.loads(res['body'])


def test_forbidden_bucket(handler: ImageHandler) -> None:
  res = handler.process(create_event('/test.jpg', {'bucket': 'elsewhere'}))

  assert 403 == res['statusCode']
  assert 'ImageBucket::CannotAccessBucket' == json.loads(res['body'])['code']


FALLBACK_ENV = {
    'ENABLE_DEFAULT_FALLBACK_IMAGE': 'Yes',
    'DEFAULT_FALLBACK_IMAGE_BUCKET': FALLBACK_BUCKET,
    'DEFAULT_FALLBACK_IMAGE_KEY': FALLBACK_KEY,
}


@pytest.mark.parametrize('env', [FALLBACK_ENV], indirect=True, ids=['fallback'])
@pytest.mark.parametrize(
    'path,status', [
        ('/missing.jpg', 404),
        ('/broken.jpg', 500),
        ('/test.jpg', 200),
    ],
    ids=['not_found', 'server_error', 'ok'])
def test_fallback(handler: ImageHandler, path: str, status: int) -> None:
  res = handler.process(create_event(path))

  assert status == res['statusCode']
  assert res['isBase64Encoded']
  if status == 200:
    assert JPEG == base64.b64decode(res['body'])
    return

  assert FALLBACK == base64.b64decode(res['body'])
  assert 'image/png' == res['headers']['Content-Type']
  assert DEFAULT_CACHE_CONTROL == res['headers']['Cache-Control']


@pytest.mark.parametrize(
    'env', [
        {
            **FALLBACK_ENV, 'DEFAULT_FALLBACK_IMAGE_KEY': 'gone.png'
        },
        {
            **FALLBACK_ENV, 'DEFAULT_FALLBACK_IMAGE_KEY': ''
        },
        {
            **FALLBACK_ENV, 'ENABLE_DEFAULT_FALLBACK_IMAGE': 'No'
        },
    ],
    indirect=True,
    ids=['fallback_missing', 'not_configured', 'disabled'])
def test_fallback_unavailable(handler: ImageHandler) -> None:
  res = handler.process(create_event('/test.jpg', {'width': '0'}))

  assert 400 == res['statusCode']
  assert not res['isBase64Encoded']
  assert 'ImageEdits::InvalidEdit' == json.loads(res['body'])['code']


@pytest.mark.parametrize(
    'env', [{
        'CORS_ENABLED': 'Yes',
        'CORS_ORIGIN': 'https://example.com'
    }],
    indirect=True,
    ids=['cors'])
def test_cors(handler: ImageHandler) -> None:
  res = handler.process(create_event('/test.jpg'))

  assert 'https://example.com' == res['headers']['Access-Control-Allow-Origin']


def test_alb(handler: ImageHandler) -> None:
  ok = handler.process(create_event('/test.jpg', alb=True))
  ng = handler.process(create_event('/missing.jpg', alb=True))

  assert 200 == ok['statusCode']
  assert 'Access-Control-Allow-Credentials' not in ok['headers']
  assert 404 == ng['statusCode']
  assert 'Access-Control-Allow-Credentials' not in ng['headers']
  assert all(isinstance(v, str) for v in ng['headers'].values())


@pytest.mark.parametrize(
    'payload,status', [
        ({
            'key': 'test.jpg',
            'appId': 'tenant1'
        }, 200),
        ({
            'key': 'test.jpg',
            'appId': 'tenant2'
        }, 404),
        ({
            'key': 'test.jpg'
        }, 404),
    ],
    ids=['active', 'inactive', 'no_tenant'])
def test_tenant(
    logger: Logger,
    store: FakeStore,
    env: dict[str, str],
    payload: dict[str, Any],
    status: int,
) -> None:
  handler = ImageHandler(
      logger, Params.from_env(env), store, Detector(None), FakeTenants({'tenant1'}))  # type: ignore
  res = handler.process(create_event(signing.encode_payload(payload)))

  assert status == res['statusCode']
  if status == 404:
    assert NOT_FOUND_BODY == json.loads(res['body'])


@pytest.fixture
def clean_instances() -> Generator[None, None, None]:
  yield
  ImageHandler.instances.clear()


def test_from_env_cached(logger: Logger, clean_instances: None) -> None:
  env = {'SOURCE_BUCKETS': BUCKET, 'AWS_REGION': REGION}

  assert ImageHandler.from_env(logger, env) is ImageHandler.from_env(logger, env)
  assert ImageHandler.from_env(logger, env) is not ImageHandler.from_env(
      logger, {
          **env, 'CORS_ENABLED': 'Yes'
      })


def test_lambda_main_without_config(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.delenv('SOURCE_BUCKETS', raising=False)

  res = index.lambda_main(create_event('/test.jpg'))

  assert 500 == res['statusCode']
  assert {
      'status': 500,
      'code': 'InternalError',
      'message': GENERIC_MESSAGE,
  } == json.loads(res['body'])
