# config.py
import os
from dotenv import load_dotenv

load_dotenv()

# --- CONFIGURACIÓN DE FINKOK (PAC) ---
# Ambiente: 'demo' o 'production'
FINKOK_ENVIRONMENT = os.getenv("FINKOK_ENVIRONMENT", "demo")
FINKOK_USER = os.getenv("FINKOK_USER", "")
FINKOK_PASSWORD = os.getenv("FINKOK_PASSWORD", "")

# Usuario de distribuidor para el servicio de registro de emisores.
# Si no se define se usan las credenciales de timbrado.
FINKOK_RESELLER_USER = os.getenv("FINKOK_RESELLER_USER", FINKOK_USER)
FINKOK_RESELLER_PASSWORD = os.getenv("FINKOK_RESELLER_PASSWORD", FINKOK_PASSWORD)

# Tiempo máximo (segundos) de cada llamada HTTP al PAC
FINKOK_TIMEOUT_SECONDS = float(os.getenv("FINKOK_TIMEOUT_SECONDS", "30"))

FINKOK_URLS = {
    "demo": {
        "stamp": "https://demo-facturacion.finkok.com/servicios/soap/stamp.wsdl",
        "cancel": "https://demo-facturacion.finkok.com/servicios/soap/cancel.wsdl",
        "registration": "https://demo-facturacion.finkok.com/servicios/soap/registration.wsdl",
        "utilities": "https://demo-facturacion.finkok.com/servicios/soap/utilities.wsdl",
    },
    "production": {
        "stamp": "https://facturacion.finkok.com/servicios/soap/stamp.wsdl",
        "cancel": "https://facturacion.finkok.com/servicios/soap/cancel.wsdl",
        "registration": "https://facturacion.finkok.com/servicios/soap/registration.wsdl",
        "utilities": "https://facturacion.finkok.com/servicios/soap/utilities.wsdl",
    },
}

# --- CONFIGURACIÓN DE LA CADENA ORIGINAL ---
# Carpeta con las hojas XSLT, un archivo por versión de CFDI
CFDI_TRANSFORMS_DIR = os.getenv(
    "CFDI_TRANSFORMS_DIR",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "timbrado", "transforms"),
)
CFDI_DEFAULT_VERSION = "4.0"
# En desarrollo la XSLT se vuelve a leer en cada llamada
CFDI_TRANSFORMS_HOT_RELOAD = os.getenv("CFDI_TRANSFORMS_HOT_RELOAD", "false").lower() == "true"

# --- POLÍTICA DE REINTENTOS DEL TIMBRADO ---
STAMP_MAX_ATTEMPTS = int(os.getenv("STAMP_MAX_ATTEMPTS", "3"))
STAMP_BACKOFF_BASE_SECONDS = float(os.getenv("STAMP_BACKOFF_BASE_SECONDS", "2"))
STAMP_BACKOFF_MULTIPLIER = float(os.getenv("STAMP_BACKOFF_MULTIPLIER", "2"))
STAMP_BACKOFF_MAX_SECONDS = float(os.getenv("STAMP_BACKOFF_MAX_SECONDS", "30"))

# --- BASE DE DATOS Y CELERY ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./timbrado.db")
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "pubsub://")
CELERY_PUBSUB_TOPIC = os.getenv("CELERY_PUBSUB_TOPIC", "cfdi-stamping")

# --- CATÁLOGOS SAT ---
# CSD de pruebas publicado por el SAT (solo ambiente demo)
CSD_PRUEBAS = {
    "rfc": "EKU9003173C9",
    "nombre": "ESCUELA KEMPER URGATE SA DE CV",
    "regimen_fiscal": "601",
    "codigo_postal": "21000",
    "password": "12345678a",
}

# Receptores válidos en el ambiente de pruebas del SAT
CLIENTES_PRUEBA = [
    {"rfc": "ICV060329BY0", "nombre": "INMOBILIARIA CVA", "codigo_postal": "33826", "regimen_fiscal": "601"},
    {"rfc": "ABC970528UHA", "nombre": "ARENA BLANCA SCL DE CV", "codigo_postal": "80290", "regimen_fiscal": "601"},
    {"rfc": "CTE950627K46", "nombre": "COMERCIALIZADORA TEODORIKAS", "codigo_postal": "57740", "regimen_fiscal": "601"},
    {"rfc": "MASO451221PM4", "nombre": "MARIA OLIVIA MARTINEZ SAGAZ", "codigo_postal": "80290", "regimen_fiscal": "612"},
    {"rfc": "AABF800614HI0", "nombre": "FELIX MANUEL ANDRADE BALLADO", "codigo_postal": "86400", "regimen_fiscal": "612"},
]
