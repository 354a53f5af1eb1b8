"""
Tracing and metrics shared by the API and the checkout engine.

Prometheus counters live in process memory: they start at zero on every
restart and are scraped from /metrics.
"""

from opentelemetry import trace
from prometheus_client import Counter, Histogram

tracer = trace.get_tracer("storefront")

# HTTP
http_requests_total = Counter('http_requests_total', 'Total HTTP requests', ['method', 'endpoint', 'status'])
http_request_duration_seconds = Histogram('http_request_duration_seconds', 'HTTP request duration', ['method', 'endpoint'])

# Checkout
orders_total = Counter('orders_total', 'Checkout attempts by outcome', ['status'])
revenue_total = Counter('revenue_total_usd', 'Total revenue in USD')
stock_conflicts_total = Counter('stock_conflicts_total', 'Conditional stock decrements that lost a race')
checkout_duration_seconds = Histogram('checkout_duration_seconds', 'Time spent in the checkout transaction')

# Cart / catalog analytics
cart_items_added_total = Counter('cart_items_added_total', 'Units added to carts')
product_searches_total = Counter('product_searches_total', 'Catalog searches with a search term')
