from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': str(BASE_DIR / 'test-settlement.sqlite3'),
        # file backed so threaded tests share one database; writers queue on BEGIN IMMEDIATE
        'OPTIONS': {'transaction_mode': 'IMMEDIATE', 'timeout': 20},
        'TEST': {'NAME': str(BASE_DIR / 'test-settlement.sqlite3')},
    }
}

ALLOWED_HOSTS = ['testserver']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

VNPAY = {
    **VNPAY,
    'TMN_CODE': 'TESTTMN1',
    'HASH_SECRET': 'test-hash-secret',
    'PAY_URL': 'https://sandbox.vnpayment.vn/paymentv2/vpcpay.html',
    'API_URL': 'https://sandbox.vnpayment.vn/merchant_webapi/api/transaction',
    'RETURN_URL': 'https://shop.example.com/payments/vnpay/return',
    'TIMEOUT_MINUTES': 15,
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'handlers': {'null': {'class': 'logging.NullHandler'}},
    'root': {'handlers': ['null']},
}
