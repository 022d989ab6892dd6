import kopf


@kopf.on.cleanup()
def remove_everything(logger, **kwargs):
    logger.info("Observability operator shutdown requested")
