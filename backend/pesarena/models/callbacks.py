"""
M-Pesa Callback Envelopes

Parsing of the provider's asynchronous result payloads. The provider sends
metadata as a list of {Name, Value} (STK) or {Key, Value} (B2C) pairs; both
are turned into plain mappings here so business code looks values up by key.
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError

RECEIPT_NUMBER_KEY = "MpesaReceiptNumber"
B2C_RECEIPT_KEY = "ReceiptNumber"


# ==================== STK push result ====================

class _CallbackItem(BaseModel):
    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


class _CallbackMetadata(BaseModel):
    item: List[_CallbackItem] = Field(default_factory=list, alias="Item")


class _StkCallbackBody(BaseModel):
    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: Optional[_CallbackMetadata] = Field(default=None, alias="CallbackMetadata")


class _StkBody(BaseModel):
    stk_callback: _StkCallbackBody = Field(alias="stkCallback")


class _StkEnvelope(BaseModel):
    body: _StkBody = Field(alias="Body")


class StkCallback(BaseModel):
    """
    Flattened STK push result.

    Example payload:
        {"Body": {"stkCallback": {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": 0,
            "ResultDesc": "The service request is processed successfully.",
            "CallbackMetadata": {"Item": [
                {"Name": "Amount", "Value": 500},
                {"Name": "MpesaReceiptNumber", "Value": "QAI12345"},
                {"Name": "TransactionDate", "Value": 20261019103041},
                {"Name": "PhoneNumber", "Value": 254712345678}
            ]}
        }}}
    """
    correlation_id: str
    merchant_request_id: Optional[str] = None
    result_code: int
    result_desc: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def receipt_reference(self) -> Optional[str]:
        value = self.metadata.get(RECEIPT_NUMBER_KEY)
        return str(value) if value is not None else None


def parse_stk_callback(payload: Any) -> StkCallback:
    """
    Parse the Body.stkCallback envelope.

    Raises:
        ValidationError: payload does not match the envelope
    """
    try:
        envelope = _StkEnvelope.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed STK callback payload",
            details={"errors": e.errors(include_url=False, include_input=False)}
        ) from e

    body = envelope.body.stk_callback
    items = body.callback_metadata.item if body.callback_metadata else []
    return StkCallback(
        correlation_id=body.checkout_request_id,
        merchant_request_id=body.merchant_request_id,
        result_code=body.result_code,
        result_desc=body.result_desc,
        metadata={item.name: item.value for item in items},
    )


# ==================== B2C payout result ====================

class _ResultParameter(BaseModel):
    key: str = Field(alias="Key")
    value: Any = Field(default=None, alias="Value")


class _ResultParameters(BaseModel):
    # A single parameter sometimes arrives as an object instead of a list
    result_parameter: Union[List[_ResultParameter], _ResultParameter] = Field(
        default_factory=list, alias="ResultParameter"
    )


class _B2CResultBody(BaseModel):
    result_type: Optional[int] = Field(default=None, alias="ResultType")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    originator_conversation_id: Optional[str] = Field(default=None, alias="OriginatorConversationID")
    conversation_id: str = Field(alias="ConversationID", min_length=1)
    transaction_id: Optional[str] = Field(default=None, alias="TransactionID")
    result_parameters: Optional[_ResultParameters] = Field(default=None, alias="ResultParameters")


class _B2CEnvelope(BaseModel):
    result: _B2CResultBody = Field(alias="Result")


class B2CResult(BaseModel):
    """Flattened B2C payout result."""
    conversation_id: str
    originator_conversation_id: Optional[str] = None
    transaction_id: Optional[str] = None
    result_code: int
    result_desc: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    @property
    def receipt_reference(self) -> Optional[str]:
        value = self.parameters.get(B2C_RECEIPT_KEY) or self.transaction_id
        return str(value) if value is not None else None


def parse_b2c_result(payload: Any) -> B2CResult:
    """
    Parse the Result envelope of a B2C result or queue-timeout callback.

    Raises:
        ValidationError: payload does not match the envelope
    """
    try:
        envelope = _B2CEnvelope.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed B2C result payload",
            details={"errors": e.errors(include_url=False, include_input=False)}
        ) from e

    body = envelope.result
    parameters = []
    if body.result_parameters is not None:
        raw = body.result_parameters.result_parameter
        parameters = raw if isinstance(raw, list) else [raw]

    return B2CResult(
        conversation_id=body.conversation_id,
        originator_conversation_id=body.originator_conversation_id,
        transaction_id=body.transaction_id,
        result_code=body.result_code,
        result_desc=body.result_desc,
        parameters={p.key: p.value for p in parameters},
    )
