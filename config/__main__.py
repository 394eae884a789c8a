"""Command line interface for testing configuration loading"""
from . import settings_conf
from pathlib import Path


def main():
    """Display loaded configuration"""
    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings_conf.items():
        print(f"{key}: {value}")

    # Save example configuration file
    examples_dir = Path("examples")
    examples_dir.mkdir(exist_ok=True)

    with open(examples_dir / "settings.conf.example", "w") as f:
        f.write("""[DEFAULT]
# Database connection URL
db_url = postgresql://postgres@localhost:5432/marketplace
# Settlement currency (ISO 4217)
currency = BRL
# PIX key that receives buyer payments
pix_key = vangarments@marketplace.com
# Minutes before unpaid PIX instructions expire and the listing is released
pix_expiration_minutes = 30
# Seconds between expired reservation sweeps
reservation_sweep_seconds = 60
# Simulated latency of the sandbox payment providers
provider_latency_ms = 0
# API server bind address
api_host = 0.0.0.0
api_port = 8000
""")


if __name__ == "__main__":
    main()
