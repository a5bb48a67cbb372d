"""vevpd.materials - 材料パラメータ・物理分岐の局所ソルバー・接線演算子."""
