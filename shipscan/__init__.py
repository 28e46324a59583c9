"""Shipping-label intake service.

Extracts structured shipment data from shipping-label photos with a hosted
vision model (Tesseract as fallback), aggregates itemized contents across
images of the same shipment, and persists validated shipping records next to
a business-registration intake form.
"""
