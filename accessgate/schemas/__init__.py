from accessgate.schemas.ledger import (
    OtpPurpose, FlowKind, FlowState, OtpChallenge, LocationSample,
    TrustedDeviceRecord, SecurityFactorSet, CredentialsVerified, DeviceVerification,
    LocationVerification, SecurityQuestionsVerified, SignupCompleted, LoginCompleted, FlowAborted,
)
from accessgate.schemas.verification import (
    ErrorKind, NextAction, StepResult, HardwareCharacteristics, DeviceSignals,
    Coordinates, SignupRequest, CredentialsRequest, FlowRequest, DeviceCheckRequest,
    OtpVerifyRequest, LocationCheckRequest, SecurityAnswersRequest, TrustDeviceRequest,
    PersistentTokenResponse,
)
from accessgate.schemas.security import (
    SecurityAssessment, SecurityScoreResponse, TrustedDeviceOut, TrustedDeviceListResponse,
    SecurityQuestionIn, SecurityQuestionsSetup, SecurityQuestionsResponse,
)
