import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import aiofiles
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector

logger = logging.getLogger("ABI_Registry")

ABI_DIR = Path(__file__).parent / "abi"


class ABI_Registry:
    """ABI registry with validation and signature mapping."""

    ABI_FILES: Dict[str, str] = {
        "flash_arbitrage": "flash_arbitrage_abi.json",
    }

    REQUIRED_METHODS: Dict[str, Set[str]] = {
        "flash_arbitrage": {"executeFlashArbitrage", "getContractBalance", "withdraw"},
    }

    def __init__(self, abi_dir: Path = ABI_DIR):
        self.abi_dir = abi_dir
        self.abis: Dict[str, List[Dict]] = {}
        self.signatures: Dict[str, Dict[str, str]] = {}
        self.method_selectors: Dict[str, Dict[str, str]] = {}

    async def initialize(self) -> None:
        """Load and validate every known ABI. Missing or invalid files are fatal."""
        for abi_type in self.ABI_FILES:
            await self.load_abi(abi_type)
        logger.debug("ABI_Registry initialization complete.")

    async def load_abi(self, abi_type: str) -> List[Dict]:
        """Load specific ABI type with validation."""
        if abi_type not in self.ABI_FILES:
            raise KeyError(f"Unknown ABI type: {abi_type}")

        abi_path = self.abi_dir / self.ABI_FILES[abi_type]
        if not abi_path.exists():
            logger.error(f"ABI file not found: {abi_path}")
            raise FileNotFoundError(f"ABI file not found: {abi_path}")

        try:
            async with aiofiles.open(abi_path, "r", encoding="utf-8") as f:
                abi = json.loads(await f.read())
        except json.JSONDecodeError as e:
            logger.error(f"JSON decode error for {abi_type} in file {abi_path}: {e}")
            raise

        if not self._validate_abi(abi, abi_type):
            raise ValueError(f"Validation failed for {abi_type} ABI from file {abi_path}")

        self.abis[abi_type] = abi
        self._extract_signatures(abi, abi_type)
        logger.debug(f"Loaded and validated {abi_type} ABI from {abi_path}")
        return abi

    def _validate_abi(self, abi: List[Dict], abi_type: str) -> bool:
        """Validate ABI structure and required methods."""
        if not isinstance(abi, list):
            logger.error(f"Invalid ABI format for {abi_type}")
            return False

        found_methods = {
            item.get("name") for item in abi
            if item.get("type") == "function" and "name" in item
        }
        missing = self.REQUIRED_METHODS.get(abi_type, set()) - found_methods
        if missing:
            logger.error(f"Missing required methods in {abi_type} ABI: {missing}")
            return False
        return True

    def _extract_signatures(self, abi: List[Dict], abi_type: str) -> None:
        signatures = {}
        selectors = {}
        for item in abi:
            if item.get("type") != "function" or not item.get("name"):
                continue
            inputs = ",".join(inp.get("type", "") for inp in item.get("inputs", []))
            signature = f"{item['name']}({inputs})"
            selector = "0x" + function_signature_to_4byte_selector(signature).hex()
            signatures[item["name"]] = signature
            selectors[selector] = item["name"]
        self.signatures[abi_type] = signatures
        self.method_selectors[abi_type] = selectors

    def get_abi(self, abi_type: str) -> Optional[List[Dict]]:
        """Get validated ABI by type."""
        return self.abis.get(abi_type)

    def get_function_signature(self, abi_type: str, method_name: str) -> Optional[str]:
        return self.signatures.get(abi_type, {}).get(method_name)

    def _function_abi(self, abi_type: str, method_name: str) -> Dict:
        for item in self.abis.get(abi_type, []):
            if item.get("type") == "function" and item.get("name") == method_name:
                return item
        raise KeyError(f"{method_name} not in {abi_type} ABI")

    def encode_call(self, abi_type: str, method_name: str, args: Sequence[Any] = ()) -> str:
        """Calldata (selector + encoded arguments) as a 0x hex string."""
        item = self._function_abi(abi_type, method_name)
        types = [inp["type"] for inp in item.get("inputs", [])]
        selector = function_signature_to_4byte_selector(self.signatures[abi_type][method_name])
        return "0x" + (selector + abi_encode(types, list(args))).hex()

    def decode_output(self, abi_type: str, method_name: str, data: bytes) -> Tuple[Any, ...]:
        item = self._function_abi(abi_type, method_name)
        types = [out["type"] for out in item.get("outputs", [])]
        return abi_decode(types, bytes(data))

    def get_method_selector(self, selector: str) -> Optional[str]:
        """Get method name from a 0x-prefixed selector, checking all ABIs."""
        for selectors in self.method_selectors.values():
            if selector in selectors:
                return selectors[selector]
        return None
