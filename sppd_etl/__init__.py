"""ETL de sindicación PLACSP: descarga de ZIP, descomposición de feeds Atom/CODICE y salida Parquet."""

__version__ = "0.1.0"
