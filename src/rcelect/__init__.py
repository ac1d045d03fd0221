__version__ = '0.1.0'

from rcelect.client import ElectionAgent as ElectionAgent
from rcelect.client import ElectionCoordinator as ElectionCoordinator
from rcelect.client import ElectionOutcome as ElectionOutcome
from rcelect.client import Leader as Leader
from rcelect.client import NoLeader as NoLeader
from rcelect.client import publish_event as publish_event
from rcelect.client import read_leader as read_leader
from rcelect.config import ElectionConfig as ElectionConfig
from rcelect.config import build_connection_string as build_connection_string
from rcelect.config import load_config as load_config
from rcelect.service import LockService as LockService
from rcelect.service import LockServiceError as LockServiceError
from rcelect.service import SqlLockService as SqlLockService
