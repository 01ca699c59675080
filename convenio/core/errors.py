"""Domain error kinds.

Every error carries an HTTP status, a stable machine code and a
human-readable Portuguese message. ``main.py`` turns them into
``{"message": ..., "code": ...}`` responses.
"""


class ConvenioError(Exception):
    status_code = 400
    code = "VALIDATION_FAILED"
    message = "Dados inválidos"

    def __init__(self, message=None, **details):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        body = {"message": self.message, "code": self.code}
        body.update(self.details)
        return body


class ValidationFailed(ConvenioError):
    pass


class PatientRefInvalid(ConvenioError):
    code = "PATIENT_REF_INVALID"
    message = "Informe exatamente um paciente: cliente, dependente ou particular"


class QuotaExceeded(ConvenioError):
    code = "QUOTA_EXCEEDED"
    message = "Limite máximo de 10 dependentes atingido"


class Unauthenticated(ConvenioError):
    status_code = 401
    code = "UNAUTHENTICATED"
    message = "Não autenticado"


class InvalidCredential(ConvenioError):
    status_code = 401
    code = "INVALID_CREDENTIAL"
    message = "CPF ou senha incorretos"


class Forbidden(ConvenioError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Acesso negado"


class RoleNotAssigned(Forbidden):
    code = "ROLE_NOT_ASSIGNED"
    message = "Role não autorizada para este usuário"


class UnauthorizedRoleAssignment(Forbidden):
    code = "UNAUTHORIZED_ROLE_ASSIGNMENT"
    message = "Apenas administradores podem alterar roles"


class SubscriptionInactive(ConvenioError):
    status_code = 403
    code = "SUBSCRIPTION_INACTIVE"
    message = "Assinatura inativa"


class SchedulingAccessExpired(ConvenioError):
    status_code = 403
    code = "SCHEDULING_ACCESS_EXPIRED"
    message = "Acesso à agenda expirado ou não liberado"


class NotFound(ConvenioError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Registro não encontrado"


class ServiceNotFound(NotFound):
    code = "SERVICE_NOT_FOUND"
    message = "Serviço não encontrado"


class InvalidCode(NotFound):
    code = "INVALID_CODE"
    message = "Código de indicação inválido"


class CouponInvalid(ConvenioError):
    code = "COUPON_INVALID"
    message = "Cupom inválido"


class DuplicateIdentifier(ConvenioError):
    status_code = 409
    code = "DUPLICATE_IDENTIFIER"
    message = "CPF já cadastrado"


class InUse(ConvenioError):
    status_code = 409
    code = "IN_USE"
    message = "Registro em uso e não pode ser excluído"


class SlotConflict(ConvenioError):
    status_code = 409
    code = "SLOT_CONFLICT"
    message = "Já existe um agendamento neste horário"


class ExternalServiceFailed(ConvenioError):
    status_code = 502
    code = "EXTERNAL_SERVICE_FAILED"
    message = "Falha ao comunicar com serviço externo"


class Internal(ConvenioError):
    status_code = 500
    code = "INTERNAL"
    message = "Erro interno do servidor"
