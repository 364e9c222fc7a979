import logging
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

import dotenv
from web3 import Web3

from apex_engine.constants import (
    DEFAULT_BACKUP_ENDPOINTS,
    DEFAULT_CHAIN_ID,
    DEFAULT_CONTRACT_ADDRESS,
    DEFAULT_HTTP_ENDPOINT,
    DEFAULT_WEBSOCKET_ENDPOINT,
    DEX_ROUTERS,
    TOKENS,
)
from apex_engine.endpoint_pool import Endpoint

logger = logging.getLogger("Configuration")

WATCHDOG_MODES = ("exit", "stream")


class Configuration:
    """
    Loads configuration from environment variables (and a .env file when present).

    Values are static for the life of the process.
    """

    def __init__(self):
        """Initialize configuration attributes with defaults."""
        self.WALLET_KEY: Optional[str] = None
        self.CONTRACT_ADDRESS: str = DEFAULT_CONTRACT_ADDRESS
        self.CHAIN_ID: int = DEFAULT_CHAIN_ID

        self.HTTP_ENDPOINT: str = DEFAULT_HTTP_ENDPOINT
        self.BACKUP_ENDPOINTS: List[str] = list(DEFAULT_BACKUP_ENDPOINTS)
        self.WEBSOCKET_ENDPOINT: str = DEFAULT_WEBSOCKET_ENDPOINT
        self.ENDPOINT_TIMEOUT: float = 10.0
        self.STALL_TIMEOUT: float = 2.5

        self.WETH_ADDRESS: str = TOKENS["WETH"]
        self.USDC_ADDRESS: str = TOKENS["USDC"]
        self.DEX_ROUTERS: Dict[str, str] = dict(DEX_ROUTERS)

        self.MIN_TRIGGER_VALUE_ETH: Decimal = Decimal("0.1")
        self.MIN_BALANCE_ETH: Decimal = Decimal("0.001")
        self.FLASH_LOAN_AMOUNT_ETH: Decimal = Decimal("100")
        self.GAS_LIMIT: int = 850_000
        self.PRIORITY_FEE_GWEI: Decimal = Decimal("2.5")

        self.HEARTBEAT_INTERVAL: float = 30.0
        self.RECONNECT_DELAY: float = 5.0
        self.WATCHDOG_INTERVAL: float = 60.0
        self.IDLE_CEILING: float = 600.0
        self.WATCHDOG_MODE: str = "exit"
        self.RECEIPT_POLL_INTERVAL: float = 2.0
        self.BOOT_RETRY_DELAY: float = 5.0

        self.MAX_PARALLEL_TASKS: int = 16
        self.QUEUE_SIZE: int = 1000
        self.EXCLUSIVE_CONFIRMATION: bool = False

        self.HOST: str = "0.0.0.0"
        self.PORT: int = 8080
        self.ADMIN_TOKEN: Optional[str] = None
        self.LOG_LEVEL: str = "INFO"

    async def load(self) -> None:
        """Loads the configuration in the correct order."""
        try:
            logger.info("Loading configuration... ⏳")
            dotenv.load_dotenv()
            self._load_providers_and_account()
            self._load_contract_elements()
            self._load_strike_parameters()
            self._load_runtime_settings()
            logger.info("System reporting go for launch ✅...")
        except Exception as e:
            logger.error(f"Error loading configuration: {e}")
            raise

    def _load_providers_and_account(self) -> None:
        self.WALLET_KEY = self._get_env_variable("TREASURY_PRIVATE_KEY")
        self.HTTP_ENDPOINT = self._get_env_variable("QUICKNODE_HTTP", self.HTTP_ENDPOINT)
        backups = os.getenv("RPC_ENDPOINTS")
        if backups is not None:
            self.BACKUP_ENDPOINTS = self._split_list(backups)
        self.WEBSOCKET_ENDPOINT = self._get_env_variable("QUICKNODE_WSS", self.WEBSOCKET_ENDPOINT)
        self.CHAIN_ID = int(self._get_env_variable("CHAIN_ID", str(self.CHAIN_ID)))
        self.ENDPOINT_TIMEOUT = float(self._get_env_variable("ENDPOINT_TIMEOUT", str(self.ENDPOINT_TIMEOUT)))
        self.STALL_TIMEOUT = float(self._get_env_variable("STALL_TIMEOUT", str(self.STALL_TIMEOUT)))
        logger.info("Providers OK ✅")
        logger.info("Account OK ✅")

    def _load_contract_elements(self) -> None:
        self.CONTRACT_ADDRESS = self._checksum(self._get_env_variable("CONTRACT_ADDRESS", self.CONTRACT_ADDRESS))
        self.WETH_ADDRESS = self._checksum(self._get_env_variable("WETH_ADDRESS", self.WETH_ADDRESS))
        self.USDC_ADDRESS = self._checksum(self._get_env_variable("USDC_ADDRESS", self.USDC_ADDRESS))
        routers = os.getenv("DEX_ROUTERS")
        if routers:
            # "NAME=0xaddr,NAME=0xaddr" or bare addresses
            parsed: Dict[str, str] = {}
            for index, item in enumerate(self._split_list(routers)):
                name, _, address = item.rpartition("=")
                parsed[name or f"ROUTER_{index}"] = address
            self.DEX_ROUTERS = parsed
        self.DEX_ROUTERS = {name: self._checksum(addr) for name, addr in self.DEX_ROUTERS.items()}
        logger.debug(f"Watching {len(self.DEX_ROUTERS)} routers: {', '.join(self.DEX_ROUTERS)}")

    def _load_strike_parameters(self) -> None:
        self.MIN_TRIGGER_VALUE_ETH = Decimal(self._get_env_variable("MIN_TRIGGER_VALUE_ETH", str(self.MIN_TRIGGER_VALUE_ETH)))
        self.MIN_BALANCE_ETH = Decimal(self._get_env_variable("MIN_BALANCE_ETH", str(self.MIN_BALANCE_ETH)))
        self.FLASH_LOAN_AMOUNT_ETH = Decimal(self._get_env_variable("FLASH_LOAN_AMOUNT_ETH", str(self.FLASH_LOAN_AMOUNT_ETH)))
        self.GAS_LIMIT = int(self._get_env_variable("GAS_LIMIT", str(self.GAS_LIMIT)))
        self.PRIORITY_FEE_GWEI = Decimal(self._get_env_variable("PRIORITY_FEE_GWEI", str(self.PRIORITY_FEE_GWEI)))

    def _load_runtime_settings(self) -> None:
        for key in (
            "HEARTBEAT_INTERVAL",
            "RECONNECT_DELAY",
            "WATCHDOG_INTERVAL",
            "IDLE_CEILING",
            "RECEIPT_POLL_INTERVAL",
            "BOOT_RETRY_DELAY",
        ):
            setattr(self, key, float(self._get_env_variable(key, str(getattr(self, key)))))
        for key in ("MAX_PARALLEL_TASKS", "QUEUE_SIZE", "PORT"):
            setattr(self, key, int(self._get_env_variable(key, str(getattr(self, key)))))

        self.WATCHDOG_MODE = self._get_env_variable("WATCHDOG_MODE", self.WATCHDOG_MODE).lower()
        if self.WATCHDOG_MODE not in WATCHDOG_MODES:
            raise ValueError(f"WATCHDOG_MODE must be one of {WATCHDOG_MODES}, got {self.WATCHDOG_MODE!r}")
        self.EXCLUSIVE_CONFIRMATION = self._get_env_variable("EXCLUSIVE_CONFIRMATION", "false").lower() in {"1", "true", "yes", "on"}
        self.HOST = self._get_env_variable("HOST", self.HOST)
        self.ADMIN_TOKEN = os.getenv("ADMIN_TOKEN") or None
        self.LOG_LEVEL = self._get_env_variable("LOG_LEVEL", self.LOG_LEVEL).upper()
        if self.LOG_LEVEL not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown LOG_LEVEL {self.LOG_LEVEL!r}")

    def _get_env_variable(self, var_name: str, default: Optional[str] = None) -> str:
        value = os.getenv(var_name, default)
        if value is None:
            raise EnvironmentError(f"Missing environment variable: {var_name}")
        return value

    @staticmethod
    def _split_list(raw: str) -> List[str]:
        return [item.strip() for item in raw.split(",") if item.strip()]

    @staticmethod
    def _checksum(address: str) -> str:
        return Web3.to_checksum_address(address)

    def get_endpoints(self) -> List[Endpoint]:
        """Ordered request/response endpoints, primary first."""
        urls = [self.HTTP_ENDPOINT] + [url for url in self.BACKUP_ENDPOINTS if url != self.HTTP_ENDPOINT]
        return [
            Endpoint(url=url, priority=rank, timeout=self.ENDPOINT_TIMEOUT)
            for rank, url in enumerate(urls, start=1)
        ]

    def get_config_value(self, key: str, default: Any = None) -> Any:
        """Safe configuration value access with default."""
        return getattr(self, key, default)
