import json
import threading
from typing import Optional

from mypy_boto3_secretsmanager.client import SecretsManagerClient


class SecretError(Exception):
  pass


class SecretAccessor:
  """Fetches the shared signing secret once per process and keeps it.

  Concurrent first callers wait on the same lock, so only one of them calls
  Secrets Manager; the rest read the cached value. A failed fetch leaves the
  cache empty and the next call tries again.
  """

  def __init__(
      self,
      client: SecretsManagerClient,
      secret_id: str,
      field: Optional[str] = None,
  ):
    self.client = client
    self.secret_id = secret_id
    self.field = field
    self._value: Optional[str] = None
    self._lock = threading.Lock()

  def get(self) -> str:
    value = self._value
    if value is not None:
      return value

    with self._lock:
      if self._value is None:
        self._value = self._fetch()
      return self._value

  def _fetch(self) -> str:
    res = self.client.get_secret_value(SecretId=self.secret_id)
    secret = res.get('SecretString')
    if not secret:
      raise SecretError(f'secret has no string value: {self.secret_id}')

    if self.field is None:
      return secret

    try:
      value = json.loads(secret)[self.field]
    except (ValueError, KeyError, TypeError):
      raise SecretError(f'secret field not found: {self.secret_id}: {self.field}')

    if not isinstance(value, str) or value == '':
      raise SecretError(f'secret field is not a string: {self.secret_id}: {self.field}')

    return value
