from sendflow.config.settings import (
    Config, DevelopmentConfig, TestingConfig, ProductionConfig
)

config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig,
}
