SETTINGS = {
    "logging": {"level": "DEBUG"},
    "service": {"port": 3000},
    # Staging databases are rebuilt often, run the catalog as soon as we boot
    "MIGRATIONS": {"RUN_ON_STARTUP": True},
}
