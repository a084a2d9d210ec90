"""
Core domain: FHIR resources and storage, screening rules, CDS cards, risk
scoring and the in-process event bus.
"""
