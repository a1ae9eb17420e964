"""Request middlewares; each module registers its factory with the registry on import."""