from typing import Dict

# Error codes
ERROR_CORE_INIT: int = 1001
ERROR_CONFIG_LOAD: int = 1003
ERROR_ABI_LOAD: int = 1004
ERROR_STREAM: int = 1005
ERROR_LIVENESS: int = 1006
ERROR_SHUTDOWN: int = 1007

# Error messages with default fallbacks
ERROR_MESSAGES: Dict[int, str] = {
    ERROR_CORE_INIT: "Core initialization failed",
    ERROR_CONFIG_LOAD: "Configuration loading failed",
    ERROR_ABI_LOAD: "Contract ABI could not be loaded",
    ERROR_STREAM: "Mempool stream failed",
    ERROR_LIVENESS: "Mempool feed went silent",
    ERROR_SHUTDOWN: "Shutdown did not complete cleanly",
}

# Base mainnet
DEFAULT_CHAIN_ID: int = 8453
DEFAULT_CONTRACT_ADDRESS: str = "0x83EF5c401fAa5B9674BAfAcFb089b30bAc67C9A0"

DEFAULT_HTTP_ENDPOINT: str = "https://mainnet.base.org"
DEFAULT_BACKUP_ENDPOINTS = ("https://base.drpc.org", "https://base.llamarpc.com")
DEFAULT_WEBSOCKET_ENDPOINT: str = "wss://base-rpc.publicnode.com"

TOKENS: Dict[str, str] = {
    "WETH": "0x4200000000000000000000000000000000000006",
    "USDC": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
}

DEX_ROUTERS: Dict[str, str] = {
    "AERODROME": "0xcF77a3Ba9A5CA399B7c97c74d54e5b1Beb874E43",
    "UNISWAP": "0x4752ba5DBc23f44D87826276BF6Fd6b1C372aD24",
}


def get_error_message(code: int, default: str = "Unknown error") -> str:
    """Get error message for error code with fallback to default message."""
    return ERROR_MESSAGES.get(code, default)
