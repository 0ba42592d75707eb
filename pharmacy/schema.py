SCHEMA_SQL = r"""
-- === Reference data ===
CREATE TABLE IF NOT EXISTS categories (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS laboratories (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  country TEXT DEFAULT 'Ecuador',
  status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive'))
);

CREATE TABLE IF NOT EXISTS suppliers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  company_name TEXT NOT NULL,
  ruc TEXT UNIQUE,
  address TEXT,
  phone TEXT,
  email TEXT,
  contact_name TEXT,
  status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive'))
);

CREATE TABLE IF NOT EXISTS customers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  document TEXT UNIQUE,
  full_name TEXT NOT NULL,
  address TEXT,
  phone TEXT,
  email TEXT
);

CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  role TEXT NOT NULL CHECK (role IN ('admin', 'pharmacist', 'cashier', 'warehouse')),
  status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive'))
);

-- === Catalog ===
-- vat_code follows SRI codigoPorcentaje: 0 = 0%, 2 = 15%, 6 = not subject, 7 = exempt
CREATE TABLE IF NOT EXISTS products (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  internal_code TEXT UNIQUE,
  commercial_name TEXT NOT NULL,
  active_ingredient TEXT,
  laboratory_id INTEGER,
  category_id INTEGER,
  requires_prescription INTEGER NOT NULL DEFAULT 0,
  is_controlled INTEGER NOT NULL DEFAULT 0,
  vat_code TEXT NOT NULL DEFAULT '0' CHECK (vat_code IN ('0', '2', '6', '7')),
  status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
  FOREIGN KEY (laboratory_id) REFERENCES laboratories(id),
  FOREIGN KEY (category_id) REFERENCES categories(id)
);

-- Presentation = sellable packaging of a product ("Box x 100 tablets")
CREATE TABLE IF NOT EXISTS presentations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  product_id INTEGER NOT NULL,
  description TEXT NOT NULL,
  base_unit TEXT NOT NULL DEFAULT 'unit',
  units_per_box INTEGER NOT NULL DEFAULT 1 CHECK (units_per_box >= 1),
  box_purchase_price REAL NOT NULL DEFAULT 0 CHECK (box_purchase_price >= 0),
  unit_sale_price REAL NOT NULL DEFAULT 0 CHECK (unit_sale_price >= 0),
  box_sale_price REAL NOT NULL DEFAULT 0 CHECK (box_sale_price >= 0),
  min_stock INTEGER NOT NULL DEFAULT 0,
  barcode TEXT UNIQUE,
  default_shelf_life_months INTEGER NOT NULL DEFAULT 24,
  status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
  FOREIGN KEY (product_id) REFERENCES products(id)
);

-- === Lots (physical batches, quantities in base units) ===
CREATE TABLE IF NOT EXISTS lots (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  presentation_id INTEGER NOT NULL,
  lot_code TEXT NOT NULL,
  expiry_date TEXT NOT NULL,             -- ISO date
  quantity_on_hand INTEGER NOT NULL DEFAULT 0 CHECK (quantity_on_hand >= 0),
  unit_purchase_cost REAL NOT NULL DEFAULT 0,
  box_purchase_cost REAL NOT NULL DEFAULT 0,
  received_date TEXT NOT NULL,           -- ISO date
  location TEXT,
  UNIQUE (presentation_id, lot_code),
  FOREIGN KEY (presentation_id) REFERENCES presentations(id)
);

-- === Purchasing ===
CREATE TABLE IF NOT EXISTS purchase_orders (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  supplier_id INTEGER NOT NULL,
  issued_on TEXT NOT NULL,
  required_on TEXT,
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('draft', 'pending', 'approved', 'received', 'cancelled')),
  subtotal REAL NOT NULL DEFAULT 0 CHECK (subtotal >= 0),
  discount REAL NOT NULL DEFAULT 0 CHECK (discount >= 0),
  tax_total REAL NOT NULL DEFAULT 0 CHECK (tax_total >= 0),
  total REAL NOT NULL DEFAULT 0 CHECK (total >= 0),
  currency TEXT NOT NULL DEFAULT 'USD',
  invoice_number TEXT,
  received_on TEXT,
  created_by INTEGER,
  notes TEXT,
  FOREIGN KEY (supplier_id) REFERENCES suppliers(id),
  FOREIGN KEY (created_by) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS purchase_order_lines (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  purchase_order_id INTEGER NOT NULL,
  presentation_id INTEGER NOT NULL,
  quantity_boxes INTEGER NOT NULL CHECK (quantity_boxes > 0),
  unit_price_box REAL NOT NULL CHECK (unit_price_box >= 0),
  subtotal REAL NOT NULL CHECK (subtotal >= 0),
  lot_code TEXT,
  expiry_date TEXT,
  lot_id INTEGER,
  FOREIGN KEY (purchase_order_id) REFERENCES purchase_orders(id),
  FOREIGN KEY (presentation_id) REFERENCES presentations(id),
  FOREIGN KEY (lot_id) REFERENCES lots(id)
);

-- === Sales ===
CREATE TABLE IF NOT EXISTS sales (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  customer_id INTEGER,
  cashier_id INTEGER,
  sold_at TEXT NOT NULL,                 -- ISO datetime
  subtotal REAL NOT NULL DEFAULT 0 CHECK (subtotal >= 0),
  tax_total REAL NOT NULL DEFAULT 0 CHECK (tax_total >= 0),
  total REAL NOT NULL DEFAULT 0 CHECK (total >= 0),
  payment_method TEXT NOT NULL DEFAULT 'cash',
  status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'completed', 'voided')),
  access_key TEXT UNIQUE,
  sri_status TEXT NOT NULL DEFAULT 'pending'
    CHECK (sri_status IN ('pending', 'received', 'authorized', 'rejected', 'returned')),
  xml_document TEXT,
  FOREIGN KEY (customer_id) REFERENCES customers(id),
  FOREIGN KEY (cashier_id) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS sale_lines (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  sale_id INTEGER NOT NULL,
  lot_id INTEGER NOT NULL,
  quantity INTEGER NOT NULL CHECK (quantity > 0),
  unit_price REAL NOT NULL CHECK (unit_price > 0),
  subtotal REAL NOT NULL CHECK (subtotal >= 0),
  vat_code TEXT NOT NULL DEFAULT '0',
  FOREIGN KEY (sale_id) REFERENCES sales(id),
  FOREIGN KEY (lot_id) REFERENCES lots(id)
);

-- === Audit: stock movements (append-only) ===
CREATE TABLE IF NOT EXISTS stock_movements (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  kind TEXT NOT NULL CHECK (kind IN (
    'purchase_receipt', 'sale_issue', 'positive_adjustment',
    'negative_adjustment', 'expiry_writeoff', 'return'
  )),
  lot_id INTEGER NOT NULL,
  quantity INTEGER NOT NULL CHECK (quantity <> 0),
  reference TEXT NOT NULL,
  moved_at TEXT NOT NULL,                -- ISO datetime
  user_id INTEGER,
  notes TEXT,
  FOREIGN KEY (lot_id) REFERENCES lots(id),
  FOREIGN KEY (user_id) REFERENCES users(id)
);

CREATE TRIGGER IF NOT EXISTS trg_stock_movements_no_update
BEFORE UPDATE ON stock_movements
BEGIN
  SELECT RAISE(ABORT, 'stock_movements is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_stock_movements_no_delete
BEFORE DELETE ON stock_movements
BEGIN
  SELECT RAISE(ABORT, 'stock_movements is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_sales_access_key_immutable
BEFORE UPDATE OF access_key ON sales
FOR EACH ROW
WHEN OLD.access_key IS NOT NULL AND NEW.access_key IS NOT OLD.access_key
BEGIN
  SELECT RAISE(ABORT, 'access_key is immutable once assigned');
END;

CREATE INDEX IF NOT EXISTS idx_lots_expiry ON lots(expiry_date);
CREATE INDEX IF NOT EXISTS idx_lots_presentation ON lots(presentation_id);
CREATE INDEX IF NOT EXISTS idx_movements_lot ON stock_movements(lot_id);
CREATE INDEX IF NOT EXISTS idx_sales_sold_at ON sales(sold_at);
CREATE INDEX IF NOT EXISTS idx_sale_lines_sale ON sale_lines(sale_id);
CREATE INDEX IF NOT EXISTS idx_po_lines_order ON purchase_order_lines(purchase_order_id);
"""

# Tables listed child-first so they can be emptied without FK violations.
DATA_TABLES = [
    "sale_lines",
    "sales",
    "purchase_order_lines",
    "purchase_orders",
    "lots",
    "presentations",
    "products",
    "customers",
    "suppliers",
    "users",
    "laboratories",
    "categories",
]
