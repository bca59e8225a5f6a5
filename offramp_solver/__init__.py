"""Off-ramp solver: intent mirroring, fiat fulfillment and payment attestation."""

__version__ = "0.1.0"
