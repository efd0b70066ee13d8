"""Shared schema keys for persisted credential records and capture payloads."""

from __future__ import annotations

# Persisted credential record
K_DOMAIN = "domain"
K_PRIMARY_COOKIE = "primary_cookie"
K_AUX_COOKIES = "aux_cookies"
K_USER_AGENT = "user_agent"
K_PLATFORM = "platform"
K_ACCEPT_LANGUAGE = "accept_language"
K_CAPTURED_AT = "captured_at"
K_INVALIDATED_AT = "invalidated_at"
K_SOURCE_URL = "source_url"

# Cookie fields
K_NAME = "name"
K_VALUE = "value"
K_PATH = "path"
K_EXPIRES = "expires"
K_SECURE = "secure"
K_HTTP_ONLY = "http_only"
K_SAME_SITE = "same_site"

# Browser-extension capture payload
K_CAP_DOMAIN = "domain"
K_CAP_URL = "url"
K_CAP_CAPTURED_AT = "capturedAt"
K_CAP_ALL_COOKIES = "allCookies"
K_CAP_COOKIES = "cookies"
K_CAP_ENTROPY = "entropy"
K_CAP_USER_AGENT = "userAgent"
K_CAP_PLATFORM = "platform"
K_CAP_LANGUAGE = "language"
K_CAP_HEADERS = "headers"
K_CAP_ACCEPT_LANGUAGE = "acceptLanguage"
K_CAP_CLEARANCE = "cfClearance"
K_CAP_HTTP_ONLY = "httpOnly"
K_CAP_SAME_SITE = "sameSite"
K_CAP_EXPIRATION = "expirationDate"

PRIMARY_COOKIE_NAME = "cf_clearance"
