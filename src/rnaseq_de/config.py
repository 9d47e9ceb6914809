from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    environment: str = "development"
    n_jobs: int = 1
    log_file: str | None = None
    min_disp: float = 1e-8
    outlier_sd: float = 2.0
    fit_type: str = "parametric"
    max_iter: int = 100
    beta_tol: float = 1e-8
    disp_tol: float = 1e-6
    fdr_threshold: float = 0.1

    class Config:
        env_file = ".env"
        env_prefix = "RNASEQ_DE_"


settings = Settings()
