from estate_contracts.schemas.contracts import ContractCreateRequest, ContractResponse, RetractionResponse
from estate_contracts.schemas.payments import PaymentCreateRequest, PaymentResponse, EscrowStatusResponse
