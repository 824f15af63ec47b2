import os
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation, localcontext
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple, Union

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

# Default .env lives in the project root, one level above this package
DEFAULT_ENV_PATH = Path(__file__).parent.parent / '.env'


@dataclass(frozen=True)
class NetworkParams:
    chain_id: int
    network_name: str
    token_address: str
    bas_registry_address: str
    human_schema_id: str
    rpc_urls: Tuple[str, ...]
    explorer_api_url: str
    explorer_browser_url: str
    token_symbol: str = 'PASS'
    token_decimals: int = 18
    native_symbol: str = 'BNB'

    def tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_browser_url.rstrip('/')}/tx/{tx_hash}"

    def address_url(self, address: str) -> str:
        return f"{self.explorer_browser_url.rstrip('/')}/address/{address}"


# Deployment parameters per chain id. Callers may pass their own mapping.
NETWORKS: Dict[int, NetworkParams] = {
    56: NetworkParams(
        chain_id=56,
        network_name='BSC Mainnet',
        token_address='0xe1F07dDeC3DC807a8861396E1c849E5612c8eD57',
        bas_registry_address='0x085105151557a6908EAD812053A4700f13d8032e',
        human_schema_id='0x43e35dc52f67fcde0aafd02b05637e1986242c239ed0bab1bc6ef698ff511539',
        rpc_urls=(
            'https://bsc-dataseed.binance.org/',
            'https://bsc-dataseed1.defibit.io/',
            'https://bsc-dataseed1.ninicoin.io/',
        ),
        explorer_api_url='https://api.etherscan.io/v2/api',
        explorer_browser_url='https://bscscan.com',
    ),
    97: NetworkParams(
        chain_id=97,
        network_name='BSC Testnet',
        token_address='0x1f7c2af1203dbC4b030a3450727C9B4C99337140',
        bas_registry_address='0x242D13567d1C2293311E6a9A3f26D07F81393669',
        human_schema_id='0x43e35dc52f67fcde0aafd02b05637e1986242c239ed0bab1bc6ef698ff511539',
        rpc_urls=(
            'https://data-seed-prebsc-1-s1.binance.org:8545/',
            'https://data-seed-prebsc-2-s1.binance.org:8545/',
        ),
        explorer_api_url='https://api.etherscan.io/v2/api',
        explorer_browser_url='https://testnet.bscscan.com',
        native_symbol='tBNB',
    ),
}


@dataclass
class RetrySettings:
    max_retries_per_endpoint: int = 3
    retry_delay_seconds: float = 5.0
    deploy_confirmations: int = 5
    transfer_confirmations: int = 1
    verification_max_attempts: int = 5
    verification_delay_seconds: float = 30.0
    rpc_timeout_seconds: int = 60
    receipt_timeout_seconds: int = 300

    def validate(self) -> bool:
        if self.max_retries_per_endpoint < 1:
            raise ConfigError("MAX_RETRIES_PER_ENDPOINT must be at least 1")
        if self.verification_max_attempts < 1:
            raise ConfigError("VERIFICATION_MAX_ATTEMPTS must be at least 1")
        if self.deploy_confirmations < 1 or self.transfer_confirmations < 1:
            raise ConfigError("Confirmation depth must be at least 1")
        if self.retry_delay_seconds < 0 or self.verification_delay_seconds < 0:
            raise ConfigError("Retry delays cannot be negative")
        return True


@dataclass
class WalletConfig:
    private_key: str = field(default='', repr=False)


@dataclass
class ExplorerConfig:
    api_key: Optional[str] = field(default=None, repr=False)
    contract_name: str = 'AirdropSimple'
    artifacts_dir: str = 'artifacts'


@dataclass
class TelegramConfig:
    bot_token: Optional[str] = field(default=None, repr=False)
    admin_chat_id: Optional[str] = None


@dataclass
class AppConfig:
    network: NetworkParams
    wallet: WalletConfig
    explorer: ExplorerConfig
    telegram: TelegramConfig
    retry: RetrySettings
    debug: bool = False


def get_network_params(chain_id: int, networks: Mapping[int, NetworkParams] = NETWORKS) -> NetworkParams:
    """Look up deployment parameters for a chain id."""
    params = networks.get(int(chain_id))
    if params is None:
        known = ', '.join(f"{cid} ({p.network_name})" for cid, p in sorted(networks.items()))
        raise ConfigError(
            f"Unsupported network: ChainID {chain_id}. Known networks: {known or 'none'}"
        )
    return params


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def load_config(chain_id: int,
                env_file: Optional[Union[str, Path]] = None,
                networks: Mapping[int, NetworkParams] = NETWORKS,
                require_wallet: bool = True) -> AppConfig:
    """
    Loads configuration from environment variables and .env files.
    The base .env provides defaults, an explicit env_file overrides it.

    Args:
        chain_id: Chain to load network parameters for.
        env_file: Optional extra env file applied on top of the base .env.
        networks: Mapping of chain id to NetworkParams.
        require_wallet: Raise if PRIVATE_KEY is missing.
    """
    loaded_base = load_dotenv(dotenv_path=DEFAULT_ENV_PATH)
    if loaded_base:
        logger.info(f"Loaded base configuration from {DEFAULT_ENV_PATH}")
    else:
        logger.debug(f"Base configuration file not found at {DEFAULT_ENV_PATH}, relying on environment variables.")

    if env_file:
        if load_dotenv(dotenv_path=env_file, override=True):
            logger.info(f"Loaded and applied overrides from {env_file}")
        else:
            logger.warning(f"Environment file {env_file} not found or empty.")

    network = get_network_params(chain_id, networks)
    rpc_override = os.getenv('RPC_URLS')
    if rpc_override:
        urls = tuple(u.strip() for u in rpc_override.split(',') if u.strip())
        if urls:
            logger.info(f"Using {len(urls)} RPC endpoint(s) from RPC_URLS")
            network = replace(network, rpc_urls=urls)
    if not network.rpc_urls:
        raise ConfigError(f"No RPC endpoints configured for {network.network_name}")

    wallet_config = WalletConfig(private_key=os.getenv('PRIVATE_KEY', '').strip())
    if require_wallet and not wallet_config.private_key:
        logger.error("PRIVATE_KEY environment variable is required but not set.")
        raise ConfigError("PRIVATE_KEY must be set in your environment or .env file.")

    explorer_config = ExplorerConfig(
        api_key=os.getenv('EXPLORER_API_KEY') or os.getenv('BSCSCAN_API_KEY'),
        contract_name=os.getenv('CONTRACT_NAME', ExplorerConfig.contract_name),
        artifacts_dir=os.getenv('ARTIFACTS_DIR', ExplorerConfig.artifacts_dir),
    )

    telegram_config = TelegramConfig(
        bot_token=os.getenv('TELEGRAM_BOT_TOKEN'),
        admin_chat_id=os.getenv('TELEGRAM_ADMIN_CHAT_ID'),
    )

    retry = RetrySettings(
        max_retries_per_endpoint=_int_env('MAX_RETRIES_PER_ENDPOINT', RetrySettings.max_retries_per_endpoint),
        retry_delay_seconds=_float_env('RETRY_DELAY_SECONDS', RetrySettings.retry_delay_seconds),
        deploy_confirmations=_int_env('DEPLOY_CONFIRMATIONS', RetrySettings.deploy_confirmations),
        transfer_confirmations=_int_env('TRANSFER_CONFIRMATIONS', RetrySettings.transfer_confirmations),
        verification_max_attempts=_int_env('VERIFICATION_MAX_ATTEMPTS', RetrySettings.verification_max_attempts),
        verification_delay_seconds=_float_env('VERIFICATION_DELAY_SECONDS', RetrySettings.verification_delay_seconds),
        rpc_timeout_seconds=_int_env('RPC_TIMEOUT_SECONDS', RetrySettings.rpc_timeout_seconds),
        receipt_timeout_seconds=_int_env('RECEIPT_TIMEOUT_SECONDS', RetrySettings.receipt_timeout_seconds),
    )
    retry.validate()

    app_config = AppConfig(
        network=network,
        wallet=wallet_config,
        explorer=explorer_config,
        telegram=telegram_config,
        retry=retry,
        debug=os.getenv('DEBUG', 'false').lower() == 'true',
    )
    logger.info(f"Configuration loaded for {network.network_name} (ChainID: {network.chain_id}), debug: {app_config.debug}")
    return app_config


def to_base_units(amount: str, decimals: int) -> int:
    """Convert a human amount such as '12.5' to integer base units without floats."""
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise ValueError("Amount must be a number greater than 0")

    with localcontext() as ctx:
        ctx.prec = 100
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"Amount {amount} has more than {decimals} decimal places")
        return int(scaled)


def format_base_units(value: int, decimals: int) -> str:
    """Render integer base units as a plain decimal string, trimming trailing zeros."""
    whole, frac = divmod(int(value), 10 ** decimals)
    if decimals == 0 or frac == 0:
        return f"{whole:,}"
    frac_str = str(frac).rjust(decimals, '0').rstrip('0')
    return f"{whole:,}.{frac_str}"
