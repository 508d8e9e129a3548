#!/usr/bin/env python3
"""
AWS MFA Session Rotator
Exchange an MFA code for temporary STS credentials and store them in a
destination profile of the shared AWS credentials file.
"""

import argparse
import configparser
import logging
import os
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, TextIO

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound
from dotenv import load_dotenv


__version__ = "1.0.0"

CREDENTIALS_ENV_VAR = "AWS_SHARED_CREDENTIALS_FILE"
CONFIG_ENV_VAR = "AWS_CONFIG_FILE"
DEFAULT_SOURCE_PROFILE = "default"
DEFAULT_REGION = "us-east-1"

MFA_SERIAL_KEY = "mfa_serial"
MFA_EXPIRATION_KEY = "mfa_expiration"
CREDENTIAL_KEYS = ("aws_access_key_id", "aws_secret_access_key", "aws_session_token")

# Fraction is dropped: expiration is tracked at one-second resolution
RFC3339_PATTERN = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[Tt](?P<time>\d{2}:\d{2}:\d{2})(?:\.\d+)?"
    r"(?P<offset>[Zz]|[+-]\d{2}:\d{2})$"
)

# Custom User-Agent suffix for AWS API calls
BOTO_CONFIG = Config(user_agent_extra=f"aws-mfa-rotate/{__version__}")

logger = logging.getLogger("aws_mfa_rotate")


class MfaRotateError(Exception):
    """Base class for every error that aborts a run."""


class ConfigurationError(MfaRotateError):
    pass


class HomeResolutionError(MfaRotateError):
    pass


class PersistenceError(MfaRotateError):
    def __init__(self, path, reason):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class ParseError(PersistenceError):
    pass


class NoMfaDeviceError(MfaRotateError):
    def __init__(self):
        super().__init__("no MFA devices configured")


class DeviceLookupError(MfaRotateError):
    pass


class TokenExchangeError(MfaRotateError):
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"AWS Error: {code} - {message}")


class MissingExpirationError(MfaRotateError):
    def __init__(self, profile: str):
        self.profile = profile
        super().__init__(f"No {MFA_EXPIRATION_KEY} recorded for profile '{profile}'")


class TimestampFormatError(MfaRotateError):
    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid {MFA_EXPIRATION_KEY} timestamp: '{value}'")


def setup_logging(debug: bool = False, log_file: Optional[str] = None):
    """Configure logging to stderr in debug mode and optionally to a file."""
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if debug else logging.INFO)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logger.addHandler(file_handler)

    # Console handler - only in debug mode
    if debug:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        logger.addHandler(console_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    logger.debug(f"Logging initialized (debug={debug}, log_file={log_file})")


class Colors:
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'


class Reporter:
    """User-facing output. Success and info lines are dropped in quiet mode."""

    def __init__(self, quiet: bool = False, out: Optional[TextIO] = None,
                 err: Optional[TextIO] = None):
        self.quiet = quiet
        self.out = out if out is not None else sys.stdout
        self.err = err if err is not None else sys.stderr

    @staticmethod
    def _paint(stream: TextIO, color: str, msg: str) -> str:
        isatty = getattr(stream, "isatty", None)
        if isatty is not None and isatty():
            return f"{color}{msg}{Colors.ENDC}"
        return msg

    def success(self, msg: str):
        logger.info(f"SUCCESS: {msg}")
        if not self.quiet:
            print(self._paint(self.out, Colors.GREEN, msg), file=self.out)

    def info(self, msg: str):
        logger.info(msg)
        if not self.quiet:
            print(self._paint(self.out, Colors.BLUE, msg), file=self.out)

    def warning(self, msg: str):
        logger.warning(msg)
        if not self.quiet:
            print(self._paint(self.err, Colors.YELLOW, msg), file=self.err)

    def error(self, msg: str):
        logger.error(msg)
        print(self._paint(self.err, Colors.RED, msg), file=self.err)


@dataclass(frozen=True)
class Settings:
    source_profile: str = DEFAULT_SOURCE_PROFILE
    destination_profile: str = ""
    mfa_code: str = ""
    time_left: bool = False
    quiet: bool = False
    debug: bool = False
    duration: Optional[int] = None
    log_file: Optional[str] = None

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Settings":
        return cls(
            source_profile=args.source,
            destination_profile=args.destination,
            mfa_code=args.code,
            time_left=args.time_left,
            quiet=args.quiet,
            debug=args.debug,
            duration=args.duration,
            log_file=args.log_file,
        )

    def validate(self):
        """Raise ConfigurationError when flags required by the selected mode are missing."""
        if not self.source_profile:
            raise ConfigurationError("A source profile (-s) is required")
        if self.time_left:
            return
        missing = []
        if not self.destination_profile:
            missing.append("-d")
        if not self.mfa_code:
            missing.append("-c")
        if missing:
            raise ConfigurationError(f"Missing required flag(s) for rotation: {', '.join(missing)}")


class AwsFilePaths:
    """Locate the shared credentials and config files.

    Args:
        environ: Mapping consulted for the override variables (defaults to os.environ)
        home: Callable returning the user's home directory (defaults to Path.home)
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None,
                 home: Optional[Callable[[], Path]] = None):
        self._environ = environ if environ is not None else os.environ
        self._home = home if home is not None else Path.home

    def _resolve(self, env_var: str, filename: str) -> Path:
        override = self._environ.get(env_var)
        if override:
            return Path(override)
        try:
            home = self._home()
        except (RuntimeError, KeyError, OSError) as e:
            raise HomeResolutionError(f"Could not determine home directory: {e}") from e
        if not home:
            raise HomeResolutionError("Could not determine home directory")
        return Path(home) / ".aws" / filename

    def credentials_path(self) -> Path:
        return self._resolve(CREDENTIALS_ENV_VAR, "credentials")

    def config_path(self) -> Path:
        return self._resolve(CONFIG_ENV_VAR, "config")


def config_section(profile: str) -> str:
    return f"profile {profile}"


def load_ini(path: Path) -> configparser.ConfigParser:
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    # Key names are written back as found
    parser.optionxform = str
    if not path.exists():
        logger.debug(f"File not found, starting empty: {path}")
        return parser
    try:
        with open(path) as f:
            parser.read_file(f)
    except configparser.Error as e:
        raise ParseError(path, f"malformed INI: {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise PersistenceError(path, f"cannot read: {e}") from e
    logger.debug(f"Loaded {path}")
    return parser


def save_ini(parser: configparser.ConfigParser, path: Path):
    try:
        with open(path, 'w') as f:
            parser.write(f)
    except OSError as e:
        raise PersistenceError(path, f"cannot write: {e}") from e

    # Set restrictive permissions (600 - owner read/write only)
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        logger.debug(f"Could not set permissions on {path}: {e}")

    logger.debug(f"Saved {path}")


def upsert(parser: configparser.ConfigParser, section: str, values: Dict[str, str]):
    if not parser.has_section(section):
        parser.add_section(section)
    for key, value in values.items():
        parser.set(section, key, value)


def parse_rfc3339(value: str) -> datetime:
    match = RFC3339_PATTERN.match(value.strip())
    if not match:
        raise TimestampFormatError(value)
    offset = match.group("offset")
    if offset in ("Z", "z"):
        offset = "+00:00"
    try:
        parsed = datetime.fromisoformat(f"{match.group('date')}T{match.group('time')}{offset}")
    except ValueError as e:
        raise TimestampFormatError(value) from e
    return parsed.astimezone(timezone.utc)


def format_rfc3339(instant: datetime) -> str:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def _describe_aws_error(e: Exception):
    if isinstance(e, ClientError):
        error = e.response.get('Error', {})
        return error.get('Code', 'Unknown'), error.get('Message', str(e))
    return type(e).__name__, str(e)


@dataclass(frozen=True)
class SessionCredentials:
    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime

    @classmethod
    def from_response(cls, credentials: Dict) -> "SessionCredentials":
        expiration = credentials['Expiration']
        if isinstance(expiration, str):
            expiration = parse_rfc3339(expiration)
        elif expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return cls(
            access_key_id=credentials['AccessKeyId'],
            secret_access_key=credentials['SecretAccessKey'],
            session_token=credentials['SessionToken'],
            expiration=expiration.astimezone(timezone.utc),
        )

    def as_profile(self) -> Dict[str, str]:
        return dict(zip(CREDENTIAL_KEYS, (self.access_key_id, self.secret_access_key, self.session_token)))

    def expiration_rfc3339(self) -> str:
        return format_rfc3339(self.expiration)


def create_session(profile: str) -> boto3.Session:
    """Create a boto3 session backed by the source profile's long-lived keys."""
    try:
        return boto3.Session(profile_name=profile)
    except ProfileNotFound as e:
        raise ConfigurationError(f"Source profile '{profile}' not found: {e}") from e
    except BotoCoreError as e:
        raise ConfigurationError(f"Could not load source profile '{profile}': {e}") from e


def create_client(session: boto3.Session, service: str):
    return session.client(service, region_name=session.region_name or DEFAULT_REGION,
                          config=BOTO_CONFIG)


def find_mfa_device(settings: Settings, paths: AwsFilePaths, iam_client,
                    reporter: Reporter) -> str:
    """Return the MFA serial to use for the rotation.

    A ``mfa_serial`` configured under the destination profile wins and is used
    verbatim. Otherwise the caller's devices are listed with the source
    profile's credentials and the first one returned by IAM is picked.
    """
    config = load_ini(paths.config_path())
    section = config_section(settings.destination_profile)
    if config.has_option(section, MFA_SERIAL_KEY):
        mfa_serial = config.get(section, MFA_SERIAL_KEY)
        reporter.info(f"Using device {mfa_serial}")
        return mfa_serial

    logger.debug(f"No {MFA_SERIAL_KEY} under [{section}], asking IAM")
    try:
        response = iam_client.list_mfa_devices()
    except (ClientError, BotoCoreError) as e:
        code, message = _describe_aws_error(e)
        raise DeviceLookupError(f"Could not list MFA devices: {code} - {message}") from e

    devices = response.get('MFADevices', [])
    if not devices:
        raise NoMfaDeviceError()

    mfa_serial = devices[0]['SerialNumber']
    logger.debug(f"IAM returned {len(devices)} device(s)")
    reporter.info(f"Using device {mfa_serial}")
    return mfa_serial


def get_session_token(sts_client, mfa_serial: str, mfa_code: str,
                      duration: Optional[int] = None) -> SessionCredentials:
    """Exchange the MFA code for temporary credentials. A single call, never retried."""
    logger.debug(f"Requesting session token for mfa_serial={mfa_serial}, duration={duration}")
    params = {'SerialNumber': mfa_serial, 'TokenCode': mfa_code}
    if duration is not None:
        params['DurationSeconds'] = duration
    try:
        response = sts_client.get_session_token(**params)
    except (ClientError, BotoCoreError) as e:
        raise TokenExchangeError(*_describe_aws_error(e)) from e

    credentials = SessionCredentials.from_response(response['Credentials'])
    logger.debug(f"Session token obtained, expires: {credentials.expiration_rfc3339()}")
    return credentials


def write_credentials(credentials: SessionCredentials, settings: Settings, paths: AwsFilePaths):
    """Store the credentials under the destination profile and the expiration under the source.

    Both files are parsed before either is written. The two writes are not
    atomic together: if the config write fails the credentials are already
    updated.
    """
    credentials_file = paths.credentials_path()
    config_file = paths.config_path()

    credentials_ini = load_ini(credentials_file)
    config_ini = load_ini(config_file)

    upsert(credentials_ini, settings.destination_profile, credentials.as_profile())
    save_ini(credentials_ini, credentials_file)

    upsert(config_ini, config_section(settings.source_profile),
           {MFA_EXPIRATION_KEY: credentials.expiration_rfc3339()})
    save_ini(config_ini, config_file)


def rotate(settings: Settings, paths: AwsFilePaths, session: boto3.Session,
           reporter: Reporter) -> SessionCredentials:
    logger.info(f"Rotating {settings.source_profile} -> {settings.destination_profile}")
    iam_client = create_client(session, 'iam')
    mfa_serial = find_mfa_device(settings, paths, iam_client, reporter)

    sts_client = create_client(session, 'sts')
    credentials = get_session_token(sts_client, mfa_serial, settings.mfa_code, settings.duration)

    write_credentials(credentials, settings, paths)
    reporter.success(f"Access token updated for {settings.destination_profile}")
    return credentials


def seconds_left(settings: Settings, paths: AwsFilePaths, now: Optional[datetime] = None) -> int:
    """Seconds until the stored token expires; negative once it has expired."""
    config = load_ini(paths.config_path())
    section = config_section(settings.source_profile)
    if not config.has_option(section, MFA_EXPIRATION_KEY):
        raise MissingExpirationError(settings.source_profile)

    expiration = parse_rfc3339(config.get(section, MFA_EXPIRATION_KEY))
    now = now if now is not None else datetime.now(timezone.utc)
    return int(expiration.timestamp()) - int(now.timestamp())


def check_validity_time(settings: Settings, paths: AwsFilePaths, reporter: Reporter,
                        now: Optional[datetime] = None) -> int:
    """Report the remaining validity of the stored token and return the exit status."""
    remaining = seconds_left(settings, paths, now)
    if remaining < 0:
        reporter.info("Token expired.")
        return 1
    reporter.info(f"Token valid for {remaining} seconds")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='aws-mfa-rotate',
        description='Rotate temporary AWS credentials for an MFA-protected profile',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s -d work-mfa -c 123456          Rotate credentials from 'default' into 'work-mfa'
  %(prog)s -s work -d work-mfa -c 123456  Use 'work' as the source profile
  %(prog)s -s work -t                     Show time left on the stored token
        """
    )
    parser.add_argument('-s', dest='source', default=DEFAULT_SOURCE_PROFILE,
                        help='Source (primary) profile')
    parser.add_argument('-d', dest='destination', default='',
                        help='MFA-enabled profile')
    parser.add_argument('-c', dest='code', default='',
                        help='MFA code. Will need at least few seconds of validity left on the token.')
    parser.add_argument('-t', dest='time_left', action='store_true',
                        help='Show time left on token')
    parser.add_argument('-q', dest='quiet', action='store_true',
                        help='Quiet mode')
    parser.add_argument('--duration', type=int, default=None,
                        help='Session duration in seconds (default: STS default)')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug mode with verbose logging')
    parser.add_argument('--log-file', default=None,
                        help='Also write the log to this file')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def load_env_file():
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)


def main(argv=None, paths: Optional[AwsFilePaths] = None,
         session_factory: Callable[[str], boto3.Session] = create_session) -> int:
    load_env_file()

    parser = build_parser()
    args = parser.parse_args(argv)
    settings = Settings.from_args(args)

    reporter = Reporter(quiet=settings.quiet)

    try:
        setup_logging(debug=settings.debug, log_file=settings.log_file)
    except OSError as e:
        reporter.error(f"Cannot open log file: {e}")
        return 1
    logger.debug(f"Arguments: {dict(vars(args), code='***' if args.code else '')}")

    try:
        settings.validate()
    except ConfigurationError as e:
        reporter.error(str(e))
        parser.print_usage(sys.stderr)
        return 1

    paths = paths if paths is not None else AwsFilePaths()

    try:
        if settings.time_left:
            return check_validity_time(settings, paths, reporter)
        session = session_factory(settings.source_profile)
        rotate(settings, paths, session, reporter)
    except MfaRotateError as e:
        reporter.error(str(e))
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
