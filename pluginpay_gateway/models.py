"""
Data models for the PluginPay gateway.

Wire names are camelCase; attributes are snake_case.
"""
from typing import Dict, Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CallRequest(BaseModel):
    """An authenticated plugin call as seen by the pipeline."""
    model_config = ConfigDict(populate_by_name=True)

    caller: str
    plugin_id: int = Field(..., alias="pluginId")
    payload: Any = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: int
    signature: str


class PluginDescriptor(BaseModel):
    """Registry entry for a plugin, read fresh from the ledger per call."""
    model_config = ConfigDict(populate_by_name=True)

    plugin_id: int = Field(..., alias="pluginId")
    name: str
    price_per_call: int = Field(..., alias="pricePerCall")
    active: bool
    version: int = 1
    verifier_key: Optional[str] = Field(None, alias="verifierKey")


class ProviderResponse(BaseModel):
    """Raw outcome of one compute provider invocation."""
    success: bool
    result: Any = None
    error: Optional[str] = None


class DispatchResult(BaseModel):
    """Outcome of dispatching a job, after large-output offload."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    result: Any = None
    error: Optional[str] = None
    execution_time_ms: int = Field(0, alias="executionTimeMs")
    offloaded: bool = False


class Receipt(BaseModel):
    """
    Signed proof that a job ran.

    ``hash`` is a pure function of the seven tuple fields; ``signature`` is the
    verifier's EIP-191 signature over that hash.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    hash: str
    signature: str
    job_id: str = Field(..., alias="jobId")
    caller: str
    plugin_id: int = Field(..., alias="pluginId")
    input_hash: str = Field(..., alias="inputHash")
    output_hash: str = Field(..., alias="outputHash")
    cost: int
    timestamp: int

    def to_wire(self) -> Dict[str, Any]:
        """Receipt as returned to callers (cost as a decimal string)."""
        data = self.model_dump(by_alias=True)
        data["cost"] = str(self.cost)
        return data


class RateLimitStatus(BaseModel):
    """Remaining allowance for a (caller, plugin) pair in the current window."""
    model_config = ConfigDict(populate_by_name=True)

    allowed: bool
    remaining: int
    reset_time: int = Field(..., alias="resetTime")


class GatewayResponse(BaseModel):
    """Transport-neutral response produced by the gateway pipeline."""
    status_code: int
    body: Dict[str, Any]


class ConsumptionRequest(BaseModel):
    """A pending ledger debit authorised by a signed receipt."""
    model_config = ConfigDict(populate_by_name=True)

    plugin_id: int = Field(..., alias="pluginId")
    receipt_hash: str = Field(..., alias="receiptHash")
    cost: int
    signature: str
    verifier: str
    attempts: int = 0
    last_error: Optional[str] = None
