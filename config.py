"""
Runtime configuration for the Sawari booking backend.

Values come from the process environment; a local .env file is loaded first
so development setups do not need exported variables.
"""
import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_BASE_URL = os.getenv("RAZORPAY_BASE_URL", "https://api.razorpay.com/v1")

OTP_TTL_SECONDS = int(os.getenv("OTP_TTL_SECONDS", 300))
REFUND_WINDOW_HOURS = float(os.getenv("REFUND_WINDOW_HOURS", 24))
BOOKING_NUMBER_PREFIX = os.getenv("BOOKING_NUMBER_PREFIX", "SW")
