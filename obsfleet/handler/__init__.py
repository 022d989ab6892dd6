from obsfleet.handler import certificates, cleanup, components, configure, fleet, observability  # noqa
