"""vevpd - エポキシ・ナノコンポジットの粘弾性-粘塑性-損傷構成則コア."""

__version__ = "0.1.0"
