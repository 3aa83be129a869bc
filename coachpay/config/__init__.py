from coachpay.config.config import Config

__all__ = ["Config"]
