"""Test-runner configuration for Hypothesis."""

from hypothesis import HealthCheck, settings

# The first st.text() draw on a cold tree builds Hypothesis's unicode cache,
# which trips the too_slow health check; that is not a property of the code.
settings.register_profile("default", suppress_health_check=[HealthCheck.too_slow])
settings.load_profile("default")
