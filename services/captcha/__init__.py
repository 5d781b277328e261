"""Captcha verification"""
from .turnstile import is_turnstile_enabled, verify_turnstile

__all__ = ['verify_turnstile', 'is_turnstile_enabled']
