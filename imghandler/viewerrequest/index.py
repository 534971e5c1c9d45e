import dataclasses
import datetime
import json
from http import HTTPStatus
from logging import Logger
from pathlib import Path
from typing import Any, Optional

import boto3
from dateutil import tz
from mypy_boto3_secretsmanager.client import SecretsManagerClient
from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern

from imghandler import signing
from imghandler.jsonlog import init_logging
from imghandler.secret import SecretAccessor
from imghandler.typing import (
    HttpPath,
    Request,
    ResponseResult,
    ViewerRequestEvent
)

CONFIG_PATH = Path(__file__).parent.parent.resolve().with_name('edge-config.json')

VIEWER_HOST = 'viewer-host'

DEFAULT_NOISE_PATTERNS = [
    '**/favicon.ico',
]


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


logger = init_logging(__name__)


@dataclasses.dataclass(frozen=True)
class Rejection:
  status: HTTPStatus
  reason: str
  message: Optional[str] = None

  def to_response(self) -> ResponseResult:
    res: ResponseResult = {
        'status': str(self.status.value),
        'statusDescription': self.status.phrase,
    }
    if self.message is not None:
      res['body'] = self.message
      res['bodyEncoding'] = 'text'
    return res


@dataclasses.dataclass(frozen=True)
class Forward:
  querystring: str
  viewer_host: Optional[str]


@dataclasses.dataclass(eq=True, frozen=True)
class EdgeParams:
  region: str
  secret_id: str
  secret_field: Optional[str]
  noise_patterns: tuple[str, ...]
  development: bool

  @classmethod
  def from_file(cls, path: Path) -> 'EdgeParams':
    conf = json.loads(path.read_text())
    return cls(
        region=conf['region'],
        secret_id=conf['secretId'],
        secret_field=conf.get('secretField'),
        noise_patterns=tuple(conf.get('noisePatterns', DEFAULT_NOISE_PATTERNS)),
        development=bool(conf.get('development', False)))


class EdgeAuthenticator:
  instances: dict[EdgeParams, 'EdgeAuthenticator'] = {}

  def __init__(
      self,
      log: Logger,
      secret: SecretAccessor,
      noise_path_spec: Optional[PathSpec],
      development: bool,
  ):
    self.log = log
    self.secret = secret
    self.noise_path_spec = noise_path_spec
    self.development = development
    self.log_context = {'path': '', 'qstr': '', 'request_id': ''}

  @classmethod
  def from_params(cls, log: Logger, params: EdgeParams) -> 'EdgeAuthenticator':
    if params not in cls.instances:
      sm: SecretsManagerClient = boto3.client('secretsmanager', region_name=params.region)
      path_spec = (
          None if len(params.noise_patterns) == 0 else PathSpec.from_lines(
              GitWildMatchPattern, params.noise_patterns))
      cls.instances[params] = cls(
          log=log,
          secret=SecretAccessor(sm, params.secret_id, params.secret_field),
          noise_path_spec=path_spec,
          development=params.development)

    return cls.instances[params]

  @classmethod
  def from_config(cls, log: Logger, path: Optional[Path] = None) -> 'EdgeAuthenticator':
    return cls.from_params(log, EdgeParams.from_file(CONFIG_PATH if path is None else path))

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

  def set_log_context(self, path: HttpPath, qstr: str, request_id: str) -> None:
    self.log_context = {'path': str(path), 'qstr': qstr, 'request_id': request_id}

  def is_noise(self, path: HttpPath) -> bool:
    return self.noise_path_spec is not None and self.noise_path_spec.match_file(path.lstrip('/'))

  def check_expires(self, qstr: str) -> Optional[Rejection]:
    expires = signing.find_param(qstr, signing.EXPIRES_PARAM)
    if expires is None:
      return None

    try:
      expires_at = datetime.datetime.fromtimestamp(float(expires), tz=tz.tzutc())
    except (ValueError, OverflowError, OSError):
      return Rejection(
          status=HTTPStatus.BAD_REQUEST,
          reason='invalid expires',
          message='Invalid expires parameter')

    if expires_at < get_now():
      return Rejection(
          status=HTTPStatus.BAD_REQUEST,
          reason='expired',
          message='Signature has expired, please request a new signature')

    return None

  def authenticate(self, path: HttpPath, qstr: str, host: Optional[str]) -> Rejection | Forward:
    if self.is_noise(path):
      return Rejection(status=HTTPStatus.NOT_FOUND, reason='noise')

    signature = signing.find_signature(qstr)
    if signature is None:
      return Rejection(
          status=HTTPStatus.UNAUTHORIZED, reason='no signature', message='Missing signature')

    if not signing.verify(self.secret.get(), path, qstr, signature):
      return Rejection(
          status=HTTPStatus.FORBIDDEN, reason='bad signature', message='Invalid signature')

    rejection = self.check_expires(qstr)
    if rejection is not None:
      return rejection

    return Forward(querystring=signing.canonical_query(qstr), viewer_host=host)

  def error_response(self, e: Exception, request_id: str) -> ResponseResult:
    self.log_error('error during authenticate()', {'reason': str(e)})
    return Rejection(
        status=HTTPStatus.BAD_REQUEST,
        reason='error occurred',
        message=error_message(e, request_id, self.development)).to_response()

  def process(self, req: Request, request_id: str) -> Request | ResponseResult:
    path = req['uri']
    qstr = req['querystring']
    self.set_log_context(path, qstr, request_id)

    try:
      result = self.authenticate(path, qstr, get_host(req))
    except Exception as e:
      return self.error_response(e, request_id)

    if isinstance(result, Rejection):
      self.log_debug('rejected', {'status': result.status.value, 'reason': result.reason})
      return result.to_response()
    elif isinstance(result, Forward):
      # CloudFront replaces the host header with the origin domain.
      if result.viewer_host is not None:
        req['headers'][VIEWER_HOST] = [{'key': 'Viewer-Host', 'value': result.viewer_host}]
      req['querystring'] = result.querystring

      self.log_debug('forwarded', {'qstr_sorted': result.querystring})
      return req
    else:
      raise Exception('system error')


def error_message(e: Exception, request_id: str, development: bool) -> str:
  if development:
    return str(e)
  return f'An error occurred, please contact us to resolve this issue. Reference #{request_id}'


def get_host(req: Request) -> Optional[str]:
  if 'host' not in req['headers'] or len(req['headers']['host']) == 0:
    return None
  return req['headers']['host'][0]['value']


def lambda_main(event: ViewerRequestEvent) -> Request | ResponseResult:
  cf = event['Records'][0]['cf']
  config = cf.get('config')
  request_id = '' if config is None else config.get('requestId', '')

  try:
    auth = EdgeAuthenticator.from_config(logger)
  except Exception as e:
    logger.error({'message': 'failed to load edge config', 'reason': str(e)})
    return Rejection(
        status=HTTPStatus.BAD_REQUEST,
        reason='no config',
        message=error_message(e, request_id, False)).to_response()

  return auth.process(cf['request'], request_id)
