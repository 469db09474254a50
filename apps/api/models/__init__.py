"""Models package."""

from .user import User
from .credit_balance import CreditBalance
from .credit_log import CreditLog
from .image_task import ImageTask
from .payment import Payment, PaymentLog
from .template import Template
from .generation_history import GenerationHistory
