from fastapi import HTTPException


class StorefrontError(HTTPException):
    status_code = 400
    detail = "Bad request"

    def __init__(self, detail=None, headers=None):
        super().__init__(status_code=self.status_code, detail=detail or self.detail, headers=headers)


# ----------------------- Authentication -----------------------
class NotAuthenticated(StorefrontError):
    status_code = 401
    detail = "Not authorized, no token"

    def __init__(self, detail=None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class InvalidCredentials(StorefrontError):
    status_code = 401
    detail = "Invalid credentials"


class EmailTaken(StorefrontError):
    detail = "Email already registered"


class OtpNotFound(StorefrontError):
    detail = "OTP not found. Please login again."


class OtpInvalid(StorefrontError):
    detail = "Invalid OTP. Please try again."


class OtpExpired(StorefrontError):
    detail = "OTP expired. Please login again."


# ----------------------- Authorization / resources -----------------------
class Forbidden(StorefrontError):
    status_code = 403
    detail = "Not authorized"


class NotFound(StorefrontError):
    status_code = 404
    detail = "Not found"


# ----------------------- Orders -----------------------
class EmptyCart(StorefrontError):
    detail = "No order items"


class ProductNotFound(StorefrontError):
    detail = "Product not found"


class InsufficientStock(StorefrontError):
    detail = "Insufficient stock"


class PaymentMethodUnavailable(StorefrontError):
    detail = "Payment method not available"
